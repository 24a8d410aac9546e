"""Vendor insurance compliance.

Each insurance expiration date is classified against today:
missing, expired (before today), expiring soon (within 30 days) or
expiring this quarter (within 90 days).
"""

from datetime import date, timedelta

from .config import INSURANCE_EXPIRING_QUARTER_DAYS, INSURANCE_EXPIRING_SOON_DAYS
from .models import Vendor
from .schemas import InsuranceStatus

# Vendor column -> display label
INSURANCE_TYPES = {
    "workers_comp_expires": "Workers Comp",
    "liability_ins_expires": "Liability",
    "auto_ins_expires": "Auto",
}

# Status key -> vendor column
STATUS_FIELDS = {
    "workers_comp": "workers_comp_expires",
    "liability": "liability_ins_expires",
    "auto": "auto_ins_expires",
}


def get_insurance_issues(vendor: Vendor, today: date | None = None) -> dict[str, list[dict]]:
    """Insurance problems for one vendor, grouped by severity."""
    today = today or date.today()
    soon = today + timedelta(days=INSURANCE_EXPIRING_SOON_DAYS)
    quarter = today + timedelta(days=INSURANCE_EXPIRING_QUARTER_DAYS)

    issues = {"expired": [], "expiring_soon": [], "expiring_quarter": [], "missing": []}
    for field, label in INSURANCE_TYPES.items():
        expires = getattr(vendor, field)
        if expires is None:
            issues["missing"].append({"type": label, "field": field})
        elif expires < today:
            issues["expired"].append({
                "type": label,
                "field": field,
                "date": expires.isoformat(),
                "days_past": (today - expires).days,
            })
        elif expires <= soon:
            issues["expiring_soon"].append({
                "type": label,
                "field": field,
                "date": expires.isoformat(),
                "days_until": (expires - today).days,
            })
        elif expires <= quarter:
            issues["expiring_quarter"].append({
                "type": label,
                "field": field,
                "date": expires.isoformat(),
                "days_until": (expires - today).days,
            })
    return issues


def get_field_status(expires: date | None, today: date) -> InsuranceStatus:
    if expires is None:
        return InsuranceStatus.MISSING
    if expires < today:
        return InsuranceStatus.EXPIRED
    if expires <= today + timedelta(days=INSURANCE_EXPIRING_SOON_DAYS):
        return InsuranceStatus.EXPIRING_SOON
    return InsuranceStatus.CURRENT


def overall_status(statuses: list[InsuranceStatus]) -> InsuranceStatus:
    if InsuranceStatus.EXPIRED in statuses:
        return InsuranceStatus.EXPIRED
    if InsuranceStatus.EXPIRING_SOON in statuses:
        return InsuranceStatus.EXPIRING_SOON
    if all(s == InsuranceStatus.MISSING for s in statuses):
        return InsuranceStatus.MISSING
    return InsuranceStatus.CURRENT


def get_insurance_status(vendor: Vendor, today: date | None = None) -> dict[str, str]:
    """Per-field status plus an overall one, e.g. {"workers_comp": "current", ..., "overall": "expired"}."""
    today = today or date.today()
    statuses = {
        key: get_field_status(getattr(vendor, field), today)
        for key, field in STATUS_FIELDS.items()
    }
    result = {key: status.value for key, status in statuses.items()}
    result["overall"] = overall_status(list(statuses.values())).value
    return result


def get_workers_comp_issues(vendors: list[Vendor], today: date | None = None) -> dict[str, list]:
    today = today or date.today()
    soon = today + timedelta(days=INSURANCE_EXPIRING_SOON_DAYS)

    issues = {"expired": [], "expiring_soon": [], "missing": [], "current": []}
    for vendor in vendors:
        expires = vendor.workers_comp_expires
        if expires is None:
            issues["missing"].append(vendor)
        elif expires < today:
            issues["expired"].append({
                "vendor": vendor,
                "date": expires.isoformat(),
                "days_past": (today - expires).days,
            })
        else:
            bucket = "expiring_soon" if expires <= soon else "current"
            issues[bucket].append({
                "vendor": vendor,
                "date": expires.isoformat(),
                "days_until": (expires - today).days,
            })
    return issues


def categorize_vendors_by_compliance(vendors: list[Vendor], today: date | None = None) -> dict[str, list]:
    """Place each vendor in its most severe category.

    Priority: expired, expiring_soon, expiring_quarter, missing_info, then
    compliant.
    """
    today = today or date.today()
    categories = {
        "expired": [],
        "expiring_soon": [],
        "expiring_quarter": [],
        "missing_info": [],
        "compliant": [],
    }

    for vendor in vendors:
        issues = get_insurance_issues(vendor, today)
        for severity, category in (
            ("expired", "expired"),
            ("expiring_soon", "expiring_soon"),
            ("expiring_quarter", "expiring_quarter"),
            ("missing", "missing_info"),
        ):
            if issues[severity]:
                categories[category].append({"vendor": vendor, "issues": issues[severity]})
                break
        else:
            categories["compliant"].append(vendor)

    return categories
