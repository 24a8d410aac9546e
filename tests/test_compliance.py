"""Tests for vendor insurance compliance."""
import uuid
from datetime import date, timedelta

from portfolio_core.compliance import (
    categorize_vendors_by_compliance,
    get_field_status,
    get_insurance_issues,
    get_insurance_status,
    get_workers_comp_issues,
    overall_status,
)
from portfolio_core.models import Vendor
from portfolio_core.schemas import InsuranceStatus

TODAY = date(2025, 6, 15)


def _vendor(company_name: str = "Acme Services", **expirations) -> Vendor:
    return Vendor(id=uuid.uuid4(), company_name=company_name, **expirations)


def _in(days: int) -> date:
    return TODAY + timedelta(days=days)


def test_issues_grouped_by_severity() -> None:
    vendor = _vendor(
        workers_comp_expires=_in(-10),
        liability_ins_expires=_in(20),
        auto_ins_expires=None,
    )

    issues = get_insurance_issues(vendor, TODAY)

    assert issues["expired"] == [{
        "type": "Workers Comp",
        "field": "workers_comp_expires",
        "date": "2025-06-05",
        "days_past": 10,
    }]
    assert issues["expiring_soon"][0]["days_until"] == 20
    assert issues["expiring_quarter"] == []
    assert issues["missing"] == [{"type": "Auto", "field": "auto_ins_expires"}]


def test_window_boundaries() -> None:
    vendor = _vendor(
        workers_comp_expires=TODAY,
        liability_ins_expires=_in(30),
        auto_ins_expires=_in(90),
    )

    issues = get_insurance_issues(vendor, TODAY)

    assert [i["type"] for i in issues["expiring_soon"]] == ["Workers Comp", "Liability"]
    assert [i["type"] for i in issues["expiring_quarter"]] == ["Auto"]
    assert issues["expired"] == []


def test_far_future_dates_are_not_issues() -> None:
    vendor = _vendor(
        workers_comp_expires=_in(91),
        liability_ins_expires=_in(365),
        auto_ins_expires=_in(200),
    )

    assert all(not entries for entries in get_insurance_issues(vendor, TODAY).values())


def test_field_status() -> None:
    assert get_field_status(None, TODAY) == InsuranceStatus.MISSING
    assert get_field_status(_in(-1), TODAY) == InsuranceStatus.EXPIRED
    assert get_field_status(_in(30), TODAY) == InsuranceStatus.EXPIRING_SOON
    assert get_field_status(_in(31), TODAY) == InsuranceStatus.CURRENT


def test_overall_status_takes_the_worst() -> None:
    assert overall_status([InsuranceStatus.CURRENT, InsuranceStatus.EXPIRED]) == InsuranceStatus.EXPIRED
    assert overall_status(
        [InsuranceStatus.CURRENT, InsuranceStatus.EXPIRING_SOON]
    ) == InsuranceStatus.EXPIRING_SOON
    assert overall_status([InsuranceStatus.MISSING] * 3) == InsuranceStatus.MISSING
    assert overall_status([InsuranceStatus.MISSING, InsuranceStatus.CURRENT]) == InsuranceStatus.CURRENT


def test_insurance_status_dict() -> None:
    vendor = _vendor(workers_comp_expires=_in(100), liability_ins_expires=_in(-3))

    assert get_insurance_status(vendor, TODAY) == {
        "workers_comp": "current",
        "liability": "expired",
        "auto": "missing",
        "overall": "expired",
    }


def test_workers_comp_issues() -> None:
    missing = _vendor("Missing")
    expired = _vendor("Expired", workers_comp_expires=_in(-1))
    soon = _vendor("Soon", workers_comp_expires=_in(5))
    current = _vendor("Current", workers_comp_expires=_in(60))

    issues = get_workers_comp_issues([missing, expired, soon, current], TODAY)

    assert issues["missing"] == [missing]
    assert issues["expired"][0]["vendor"] is expired
    assert issues["expired"][0]["days_past"] == 1
    assert issues["expiring_soon"][0]["days_until"] == 5
    assert issues["current"][0]["vendor"] is current


def test_categorize_uses_most_severe_category() -> None:
    expired = _vendor("Expired", workers_comp_expires=_in(-1), liability_ins_expires=_in(5))
    soon = _vendor("Soon", workers_comp_expires=_in(5))
    quarter = _vendor(
        "Quarter",
        workers_comp_expires=_in(60),
        liability_ins_expires=_in(200),
        auto_ins_expires=_in(200),
    )
    missing = _vendor(
        "Missing",
        workers_comp_expires=_in(200),
        liability_ins_expires=_in(200),
    )
    compliant = _vendor(
        "Compliant",
        workers_comp_expires=_in(200),
        liability_ins_expires=_in(200),
        auto_ins_expires=_in(200),
    )

    categories = categorize_vendors_by_compliance([expired, soon, quarter, missing, compliant], TODAY)

    assert [entry["vendor"] for entry in categories["expired"]] == [expired]
    assert [entry["vendor"] for entry in categories["expiring_soon"]] == [soon]
    assert [entry["vendor"] for entry in categories["expiring_quarter"]] == [quarter]
    assert [entry["vendor"] for entry in categories["missing_info"]] == [missing]
    assert categories["missing_info"][0]["issues"] == [{"type": "Auto", "field": "auto_ins_expires"}]
    assert categories["compliant"] == [compliant]
