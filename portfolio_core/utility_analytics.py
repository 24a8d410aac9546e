"""Utility cost metrics per property and across the portfolio.

Costs come from UtilityExpense rows whose GL account carries the utility
type. Portfolio statistics only consider active properties that are not
excluded from utility reports, either entirely or for the utility type in
question (tenant-paid or HOA-covered utilities).
"""

import logging
import statistics
import uuid
from datetime import date

from sqlalchemy import and_, case, func, select
from sqlalchemy.orm import Session

from .config import ANOMALY_STD_DEV_THRESHOLD
from .exceptions import InvalidMetricError
from .models import Property, PropertyUtilityExclusion, Unit, UtilityAccount, UtilityExpense
from .periods import (
    DateRange,
    Period,
    PeriodType,
    TrendGranularity,
    bucket_label,
    shift_month,
    subtract_years,
    trailing_buckets,
    trailing_range,
)
from .schemas import UtilityMetric, UtilityType
from .sql import to_date, truncate_to
from .vendor_analytics import percent_change

logger = logging.getLogger(__name__)


def _in_range(date_range: DateRange):
    return and_(
        UtilityExpense.expense_date >= date_range.start,
        UtilityExpense.expense_date < date_range.end,
    )


def _sum_in(date_range: DateRange, label: str):
    return func.coalesce(
        func.sum(case((_in_range(date_range), UtilityExpense.amount))), 0
    ).label(label)


def _std_dev(values: list[float]) -> float | None:
    if not values:
        return None
    return statistics.stdev(values) if len(values) >= 2 else 0.0


def _round(value: float | None, digits: int = 2) -> float | None:
    return round(value, digits) if value is not None else None


def _coerce_metric(metric: UtilityMetric | str) -> UtilityMetric:
    try:
        return UtilityMetric(metric)
    except ValueError:
        raise InvalidMetricError(f"Invalid metric: {metric}") from None


class UtilityAnalytics:
    """Utility cost statistics backed by one database session."""

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # Property scoping
    # =========================================================================

    def _expense_query(self, *columns):
        return self.db.query(*columns).join(
            UtilityAccount, UtilityExpense.utility_account_id == UtilityAccount.id
        )

    def _report_properties_query(self):
        return self.db.query(Property).filter(
            Property.is_active.is_(True),
            Property.exclude_from_utility_reports.is_(False),
        )

    @staticmethod
    def _excluded_property_ids(utility_type: str):
        return select(PropertyUtilityExclusion.property_id).where(
            PropertyUtilityExclusion.utility_type == utility_type
        )

    def get_effective_unit_count(self, property: Property) -> int:
        """Configured unit count, falling back to the number of active units."""
        if property.unit_count is not None:
            return property.unit_count
        return self.db.query(func.count(Unit.id)).filter(
            Unit.property_id == property.id,
            Unit.is_active.is_(True),
        ).scalar() or 0

    def _unit_counts(self, properties: list[Property]) -> dict[uuid.UUID, int]:
        """Effective unit counts for many properties with one query."""
        counts = {p.id: p.unit_count for p in properties if p.unit_count is not None}
        missing = [p.id for p in properties if p.unit_count is None]
        if missing:
            rows = self.db.query(Unit.property_id, func.count(Unit.id)).filter(
                Unit.property_id.in_(missing),
                Unit.is_active.is_(True),
            ).group_by(Unit.property_id).all()
            counts.update({property_id: count for property_id, count in rows})
        return {p.id: counts.get(p.id, 0) for p in properties}

    @staticmethod
    def _normalize(cost: float, property: Property, unit_count: int, metric: UtilityMetric) -> float | None:
        if metric == UtilityMetric.PER_UNIT:
            return cost / unit_count if unit_count > 0 else None
        sqft = property.total_sqft or 0
        return cost / sqft if sqft > 0 else None

    # =========================================================================
    # Single property
    # =========================================================================

    def get_total_cost(self, property: Property, utility_type: str, period: Period) -> float:
        total = self._expense_query(
            func.coalesce(func.sum(UtilityExpense.amount), 0)
        ).filter(
            UtilityExpense.property_id == property.id,
            UtilityAccount.utility_type == utility_type,
            _in_range(period.resolve()),
        ).scalar()
        return round(float(total or 0), 2)

    def get_cost_per_unit(self, property: Property, utility_type: str, period: Period) -> float | None:
        unit_count = self.get_effective_unit_count(property)
        if unit_count <= 0:
            return None
        return round(self.get_total_cost(property, utility_type, period) / unit_count, 2)

    def get_cost_per_sqft(self, property: Property, utility_type: str, period: Period) -> float | None:
        if not property.total_sqft or property.total_sqft <= 0:
            return None
        return round(self.get_total_cost(property, utility_type, period) / property.total_sqft, 4)

    def get_period_comparison(
        self, property: Property, utility_type: str, reference: date | None = None
    ) -> dict:
        """Month, quarter and YTD costs against their previous counterparts.

        Previous month and quarter are the calendar periods before the
        reference's; previous YTD is the same span one year earlier.
        """
        reference = reference or date.today()
        quarter_start = Period(type=PeriodType.QUARTER, date=reference).resolve().start

        ranges = {
            "current_month": Period(type=PeriodType.MONTH, date=reference).resolve(),
            "previous_month": Period(type=PeriodType.LAST_MONTH, date=reference).resolve(),
            "current_quarter": Period(type=PeriodType.QUARTER, date=reference).resolve(),
            "previous_quarter": Period(
                type=PeriodType.QUARTER,
                date=shift_month(quarter_start.year, quarter_start.month, -3),
            ).resolve(),
            "current_ytd": Period(type=PeriodType.YTD, date=reference).resolve(),
            "previous_ytd": Period(type=PeriodType.YTD, date=subtract_years(reference, 1)).resolve(),
        }
        overall = DateRange(
            start=min(r.start for r in ranges.values()),
            end=max(r.end for r in ranges.values()),
        )

        row = self._expense_query(
            *[_sum_in(date_range, name) for name, date_range in ranges.items()]
        ).filter(
            UtilityExpense.property_id == property.id,
            UtilityAccount.utility_type == utility_type,
            _in_range(overall),
        ).one()
        costs = {name: round(float(getattr(row, name) or 0), 2) for name in ranges}

        return {
            "current_month": costs["current_month"],
            "previous_month": costs["previous_month"],
            "month_change": percent_change(costs["previous_month"], costs["current_month"]),
            "current_quarter": costs["current_quarter"],
            "previous_quarter": costs["previous_quarter"],
            "quarter_change": percent_change(costs["previous_quarter"], costs["current_quarter"]),
            "current_ytd": costs["current_ytd"],
            "previous_ytd": costs["previous_ytd"],
            "ytd_change": percent_change(costs["previous_ytd"], costs["current_ytd"]),
        }

    def get_cost_breakdown(self, property: Property, period: Period) -> dict:
        """Cost per utility type with its share of the property total."""
        rows = self._expense_query(
            UtilityAccount.utility_type,
            func.sum(UtilityExpense.amount).label("cost"),
        ).filter(
            UtilityExpense.property_id == property.id,
            _in_range(period.resolve()),
        ).group_by(UtilityAccount.utility_type).all()
        costs = {row.utility_type: round(float(row.cost or 0), 2) for row in rows}

        types = [t.value for t in UtilityType]
        types += sorted(t for t in costs if t not in types)
        total = round(sum(costs.values()), 2)

        return {
            "breakdown": [
                {
                    "type": utility_type,
                    "cost": costs.get(utility_type, 0.0),
                    "percentage": round(costs.get(utility_type, 0.0) / total * 100, 1) if total > 0 else 0,
                }
                for utility_type in types
            ],
            "total": total,
        }

    def get_trend(
        self,
        property: Property,
        utility_type: str,
        periods: int = 12,
        granularity: TrendGranularity | str = TrendGranularity.MONTH,
        reference: date | None = None,
    ) -> list[dict]:
        """Cost and cost per unit over the trailing buckets, oldest first."""
        try:
            granularity = TrendGranularity(granularity)
        except ValueError:
            raise InvalidMetricError(
                f"Invalid period type '{granularity}'. Allowed values are: month, quarter, year."
            ) from None

        reference = reference or date.today()
        bucket = truncate_to(UtilityExpense.expense_date, granularity)
        rows = self._expense_query(
            bucket.label("bucket"),
            func.sum(UtilityExpense.amount).label("cost"),
        ).filter(
            UtilityExpense.property_id == property.id,
            UtilityAccount.utility_type == utility_type,
            _in_range(trailing_range(reference, periods, granularity)),
        ).group_by(bucket).all()
        costs = {to_date(row.bucket): round(float(row.cost or 0), 2) for row in rows}

        unit_count = self.get_effective_unit_count(property)
        data = []
        for start in trailing_buckets(reference, periods, granularity):
            cost = costs.get(start, 0.0)
            data.append({
                "period": bucket_label(start, granularity),
                "date": start.isoformat(),
                "cost": cost,
                "cost_per_unit": round(cost / unit_count, 2) if unit_count > 0 else None,
            })
        return data

    # =========================================================================
    # Portfolio
    # =========================================================================

    def _portfolio_costs(self, utility_type: str, date_range: DateRange) -> dict[uuid.UUID, float]:
        """Cost per report property with cost > 0, one grouped query."""
        rows = self._expense_query(
            UtilityExpense.property_id,
            func.sum(UtilityExpense.amount).label("cost"),
        ).join(
            Property, UtilityExpense.property_id == Property.id
        ).filter(
            UtilityAccount.utility_type == utility_type,
            Property.is_active.is_(True),
            Property.exclude_from_utility_reports.is_(False),
            UtilityExpense.property_id.notin_(self._excluded_property_ids(utility_type)),
            _in_range(date_range),
        ).group_by(
            UtilityExpense.property_id
        ).having(
            func.sum(UtilityExpense.amount) > 0
        ).all()
        return {row.property_id: float(row.cost) for row in rows}

    def _portfolio_data(self, utility_type: str, period: Period, metric: UtilityMetric) -> dict:
        costs = self._portfolio_costs(utility_type, period.resolve())
        properties = self.db.query(Property).filter(
            Property.id.in_(list(costs))
        ).order_by(Property.name).all() if costs else []
        unit_counts = self._unit_counts(properties)

        property_values = []
        for prop in properties:
            value = self._normalize(costs[prop.id], prop, unit_counts[prop.id], metric)
            if value is not None:
                property_values.append({
                    "property_id": str(prop.id),
                    "property_name": prop.name,
                    "value": value,
                })

        values = [p["value"] for p in property_values]
        return {
            "average": statistics.fmean(values) if values else None,
            "median": statistics.median(values) if values else None,
            "std_dev": _std_dev(values),
            "total_cost": round(sum(costs.values()), 2),
            "property_count": len(costs),
            "data_points": len(values),
            "min": min(values) if values else None,
            "max": max(values) if values else None,
            "property_values": property_values,
        }

    def get_portfolio_average(
        self,
        utility_type: str,
        period: Period,
        metric: UtilityMetric | str = UtilityMetric.PER_UNIT,
    ) -> dict:
        """Distribution of per-unit (or per-sqft) cost across report properties."""
        data = self._portfolio_data(utility_type, period, _coerce_metric(metric))
        return {
            "average": _round(data["average"]),
            "median": _round(data["median"]),
            "std_dev": _round(data["std_dev"]),
            "total_cost": data["total_cost"],
            "property_count": data["property_count"],
            "data_points": data["data_points"],
            "min": _round(data["min"]),
            "max": _round(data["max"]),
        }

    def get_anomalies(
        self,
        utility_type: str,
        period: Period,
        threshold: float = ANOMALY_STD_DEV_THRESHOLD,
        metric: UtilityMetric | str = UtilityMetric.PER_UNIT,
    ) -> list[dict]:
        """Properties outside average +- threshold * std dev, most anomalous first."""
        data = self._portfolio_data(utility_type, period, _coerce_metric(metric))
        average = data["average"]
        std_dev = data["std_dev"]
        if not std_dev:
            return []

        lower = average - threshold * std_dev
        upper = average + threshold * std_dev

        anomalies = []
        for item in data["property_values"]:
            value = item["value"]
            if lower <= value <= upper:
                continue
            anomalies.append({
                "property_id": item["property_id"],
                "property_name": item["property_name"],
                "value": round(value, 2),
                "average": round(average, 2),
                "deviation": round((value - average) / std_dev, 2),
                "type": "high" if value > upper else "low",
            })

        anomalies.sort(key=lambda a: abs(a["deviation"]), reverse=True)
        if anomalies:
            logger.info(f"{len(anomalies)} {utility_type} cost anomalies for {period.type.value}")
        return anomalies

    def get_portfolio_trend(self, periods: int = 12, reference: date | None = None) -> list[dict]:
        """Monthly portfolio cost per utility type, plus the total."""
        reference = reference or date.today()
        granularity = TrendGranularity.MONTH
        bucket = truncate_to(UtilityExpense.expense_date, granularity)
        excluded = select(PropertyUtilityExclusion.id).where(
            PropertyUtilityExclusion.property_id == UtilityExpense.property_id,
            PropertyUtilityExclusion.utility_type == UtilityAccount.utility_type,
        ).exists()

        rows = self._expense_query(
            bucket.label("bucket"),
            UtilityAccount.utility_type,
            func.sum(UtilityExpense.amount).label("cost"),
        ).join(
            Property, UtilityExpense.property_id == Property.id
        ).filter(
            Property.is_active.is_(True),
            Property.exclude_from_utility_reports.is_(False),
            ~excluded,
            _in_range(trailing_range(reference, periods, granularity)),
        ).group_by(bucket, UtilityAccount.utility_type).all()

        costs: dict[date, dict[str, float]] = {}
        for row in rows:
            costs.setdefault(to_date(row.bucket), {})[row.utility_type] = float(row.cost or 0)

        types = [t.value for t in UtilityType]
        data = []
        for start in trailing_buckets(reference, periods, granularity):
            by_type = costs.get(start, {})
            entry = {"period": bucket_label(start, granularity), "date": start.isoformat()}
            for utility_type in types:
                entry[utility_type] = round(by_type.get(utility_type, 0.0), 2)
            entry["total"] = round(sum(by_type.values()), 2)
            data.append(entry)
        return data

    def get_property_comparison(self, utility_type: str, reference: date | None = None) -> dict:
        """Per-property cost table for one utility type.

        Previous 3 / 12 month figures are monthly averages over full calendar
        months before the reference month. Per unit and per sqft use the
        12-month monthly average.
        """
        reference = reference or date.today()
        current_month = Period(type=PeriodType.MONTH, date=reference).resolve()
        previous_month = Period(type=PeriodType.LAST_MONTH, date=reference).resolve()
        previous_3 = Period(type=PeriodType.LAST_3_MONTHS, date=reference).resolve()
        previous_12 = Period(type=PeriodType.LAST_12_MONTHS, date=reference).resolve()

        properties = self._report_properties_query().order_by(Property.name).all()
        rows = self._expense_query(
            UtilityExpense.property_id,
            _sum_in(current_month, "current_month"),
            _sum_in(previous_month, "prev_month"),
            _sum_in(previous_3, "prev_3_months"),
            _sum_in(previous_12, "prev_12_months"),
        ).filter(
            UtilityAccount.utility_type == utility_type,
            UtilityExpense.property_id.in_([p.id for p in properties]),
            _in_range(DateRange(start=previous_12.start, end=current_month.end)),
        ).group_by(UtilityExpense.property_id).all()
        by_property = {row.property_id: row for row in rows}

        totals = {"current_month": 0.0, "prev_month": 0.0, "prev_3_months": 0.0, "prev_12_months": 0.0}
        data = []
        for prop in properties:
            row = by_property.get(prop.id)
            sums = {key: float(getattr(row, key) or 0) if row else 0.0 for key in totals}
            for key, value in sums.items():
                totals[key] += value

            monthly_12 = sums["prev_12_months"] / 12
            avg_per_unit = None
            avg_per_sqft = None
            if sums["prev_12_months"] > 0:
                if prop.unit_count:
                    avg_per_unit = round(monthly_12 / prop.unit_count, 2)
                if prop.total_sqft:
                    avg_per_sqft = round(monthly_12 / prop.total_sqft, 4)

            data.append({
                "property_id": str(prop.id),
                "property_name": prop.name,
                "unit_count": prop.unit_count,
                "total_sqft": prop.total_sqft,
                "current_month": round(sums["current_month"], 2) or None,
                "prev_month": round(sums["prev_month"], 2) or None,
                "prev_3_months": round(sums["prev_3_months"] / 3, 2) or None,
                "prev_12_months": round(monthly_12, 2) or None,
                "avg_per_unit": avg_per_unit,
                "avg_per_sqft": avg_per_sqft,
            })

        count = len(properties)
        averages = {
            "current_month": round(totals["current_month"] / count, 2) if count else None,
            "prev_month": round(totals["prev_month"] / count, 2) if count else None,
            "prev_3_months": round(totals["prev_3_months"] / 3 / count, 2) if count else None,
            "prev_12_months": round(totals["prev_12_months"] / 12 / count, 2) if count else None,
        }

        return {
            "properties": data,
            "totals": {key: round(value, 2) for key, value in totals.items()},
            "averages": averages,
            "property_count": count,
        }
