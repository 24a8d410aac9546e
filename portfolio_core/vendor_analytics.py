"""Vendor metrics over work orders.

All metrics are scoped by a Period and, by default, by the vendor's whole
canonical group (the canonical vendor plus every duplicate linked to it),
since duplicates are the same real-world vendor.

Empty scopes are not errors: counts and totals come back as zero and every
derived average as None, so "no activity" stays distinguishable from "zero
spend".

Reports are built from one grouped query each (per vendor, per period
bucket, per property) rather than one query per entity or per period.
"""

import logging
import statistics
import uuid
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum

from sqlalchemy import and_, case, func, select
from sqlalchemy.orm import Session

from .compliance import get_insurance_status
from .exceptions import InvalidMetricError
from .models import Property, Vendor, WorkOrder
from .periods import (
    DateRange,
    Period,
    PeriodType,
    TrendGranularity,
    bucket_label,
    subtract_years,
    trailing_buckets,
    trailing_range,
)
from .schemas import CLOSED_STATUSES, WorkOrderPriority, WorkOrderStatus
from .sql import as_float, days_between, to_date, truncate_to
from .vendors import get_group_vendor_ids

logger = logging.getLogger(__name__)


class RankMetric(str, Enum):
    """Metrics vendors can be ranked by."""

    WORK_ORDER_COUNT = "work_order_count"
    TOTAL_SPEND = "total_spend"
    AVG_COST = "avg_cost"
    AVG_COMPLETION_TIME = "avg_completion_time"


# Ranking direction: lower is better for cost and time
LOWER_IS_BETTER = {RankMetric.AVG_COST, RankMetric.AVG_COMPLETION_TIME}

_RANK_METRIC_KEYS = {
    RankMetric.WORK_ORDER_COUNT: "work_order_count",
    RankMetric.TOTAL_SPEND: "total_spend",
    RankMetric.AVG_COST: "avg_cost_per_wo",
    RankMetric.AVG_COMPLETION_TIME: "avg_completion_time",
}

METRIC_KEYS = ("work_order_count", "total_spend", "avg_cost_per_wo", "avg_completion_time")

PRIORITY_ORDER = [p.value for p in WorkOrderPriority]

# Percent band treated as "at average"
AVERAGE_BAND_PERCENT = 5
# Half-over-half change that counts as a trend
TREND_CHANGE_PERCENT = 10
MIN_TREND_POINTS = 3

COMPLETION_BUCKETS = [
    # key, label, inclusive upper bound in days (None = open ended)
    ("same_day", "Same Day", None),
    ("1_3_days", "1-3 Days", 3),
    ("4_7_days", "4-7 Days", 7),
    ("1_2_weeks", "1-2 Weeks", 14),
    ("2_4_weeks", "2-4 Weeks", 28),
    ("over_4_weeks", "4+ Weeks", None),
]


# =============================================================================
# Shared math
# =============================================================================


def percent_change(previous: float | None, current: float | None) -> float | None:
    """(current - previous) / previous * 100, None when previous is missing or <= 0."""
    if previous is None or previous <= 0:
        return None
    return round(((current or 0) - previous) / previous * 100, 1)


def percent_difference(baseline: float | None, actual: float | None) -> dict | None:
    """Difference from a baseline with an above/below/average direction."""
    if baseline is None or actual is None or baseline <= 0:
        return None

    difference = actual - baseline
    percent = round(difference / baseline * 100, 1)
    if percent > AVERAGE_BAND_PERCENT:
        direction = "above"
    elif percent < -AVERAGE_BAND_PERCENT:
        direction = "below"
    else:
        direction = "average"
    return {"difference": round(difference, 2), "percent": percent, "direction": direction}


def median(values: list[float]) -> float | None:
    if not values:
        return None
    return round(statistics.median(values), 1)


def trend_direction(values: list[float]) -> str:
    """Compare first-half and second-half averages of a series."""
    values = [v for v in values if v is not None]
    if len(values) < MIN_TREND_POINTS:
        return "insufficient_data"

    midpoint = len(values) // 2
    first_avg = sum(values[:midpoint]) / midpoint
    second_avg = sum(values[midpoint:]) / (len(values) - midpoint)

    if abs(first_avg) < 0.00001:
        return "increasing" if second_avg > 0 else "stable"

    change = (second_avg - first_avg) / first_avg * 100
    if change > TREND_CHANGE_PERCENT:
        return "increasing"
    if change < -TREND_CHANGE_PERCENT:
        return "decreasing"
    return "stable"


def completion_buckets(days: list[float]) -> dict:
    """Distribution of completion times across fixed day ranges."""
    counts = {key: 0 for key, _, _ in COMPLETION_BUCKETS}
    for value in days:
        if value < 1:
            counts["same_day"] += 1
        elif value <= 3:
            counts["1_3_days"] += 1
        elif value <= 7:
            counts["4_7_days"] += 1
        elif value <= 14:
            counts["1_2_weeks"] += 1
        elif value <= 28:
            counts["2_4_weeks"] += 1
        else:
            counts["over_4_weeks"] += 1

    total = len(days)
    return {
        key: {
            "label": label,
            "count": counts[key],
            "percentage": round(counts[key] / total * 100, 1) if total else 0,
        }
        for key, label, _ in COMPLETION_BUCKETS
    }


def _closed_condition():
    return and_(WorkOrder.closed_at.isnot(None), WorkOrder.status.in_(CLOSED_STATUSES))


def _completion_days_column():
    return days_between(WorkOrder.opened_at, WorkOrder.closed_at)


def _in_range(date_range: DateRange):
    return [WorkOrder.opened_at >= date_range.start_at, WorkOrder.opened_at < date_range.end_at]


def _totals_columns() -> list:
    """Additive aggregates: folding duplicates or buckets is plain addition."""
    closed = _closed_condition()
    priced = WorkOrder.amount > 0
    return [
        func.count(WorkOrder.id).label("work_order_count"),
        func.coalesce(func.sum(WorkOrder.amount), 0).label("total_spend"),
        func.coalesce(func.sum(case((priced, WorkOrder.amount))), 0).label("priced_spend"),
        func.count(case((priced, 1))).label("priced_count"),
        func.coalesce(func.sum(case((closed, _completion_days_column()))), 0).label("completion_days"),
        func.count(case((closed, 1))).label("completed_count"),
    ]


@dataclass
class WorkOrderTotals:
    """Additive work-order aggregates for one scope."""

    work_order_count: int = 0
    total_spend: float = 0.0
    priced_spend: float = 0.0
    priced_count: int = 0
    completion_days: float = 0.0
    completed_count: int = 0

    @classmethod
    def from_row(cls, row) -> "WorkOrderTotals":
        return cls(
            work_order_count=int(row.work_order_count or 0),
            total_spend=float(row.total_spend or 0),
            priced_spend=float(row.priced_spend or 0),
            priced_count=int(row.priced_count or 0),
            completion_days=float(row.completion_days or 0),
            completed_count=int(row.completed_count or 0),
        )

    def add(self, other: "WorkOrderTotals") -> None:
        self.work_order_count += other.work_order_count
        self.total_spend += other.total_spend
        self.priced_spend += other.priced_spend
        self.priced_count += other.priced_count
        self.completion_days += other.completion_days
        self.completed_count += other.completed_count

    @property
    def avg_cost_per_wo(self) -> float | None:
        if self.priced_count == 0:
            return None
        return round(self.priced_spend / self.priced_count, 2)

    @property
    def avg_completion_time(self) -> float | None:
        if self.completed_count == 0:
            return None
        return round(self.completion_days / self.completed_count, 1)

    def as_metrics(self) -> dict:
        return {
            "work_order_count": self.work_order_count,
            "total_spend": round(self.total_spend, 2),
            "avg_cost_per_wo": self.avg_cost_per_wo,
            "avg_completion_time": self.avg_completion_time,
        }


class VendorAnalytics:
    """Vendor performance metrics backed by one database session."""

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # Scoping
    # =========================================================================

    def _vendor_ids(self, vendor: Vendor, include_group: bool) -> list[uuid.UUID]:
        if include_group:
            return get_group_vendor_ids(self.db, vendor)
        return [vendor.id]

    def _canonical_mapping(self, canonical_ids: list[uuid.UUID]) -> dict[uuid.UUID, uuid.UUID]:
        """vendor_id -> canonical id for the given canonical vendors and their duplicates."""
        mapping = {vendor_id: vendor_id for vendor_id in canonical_ids}
        if not canonical_ids:
            return mapping
        rows = self.db.query(Vendor.id, Vendor.canonical_vendor_id).filter(
            Vendor.canonical_vendor_id.in_(canonical_ids)
        ).all()
        for row in rows:
            mapping[row.id] = row.canonical_vendor_id
        return mapping

    def _totals(self, vendor_ids: list[uuid.UUID], date_range: DateRange) -> WorkOrderTotals:
        row = self.db.query(*_totals_columns()).filter(
            WorkOrder.vendor_id.in_(vendor_ids),
            *_in_range(date_range),
        ).one()
        return WorkOrderTotals.from_row(row)

    # =========================================================================
    # Core metrics
    # =========================================================================

    def get_work_order_count(self, vendor: Vendor, period: Period, include_group: bool = True) -> int:
        """Work orders opened within the period."""
        return self._totals(self._vendor_ids(vendor, include_group), period.resolve()).work_order_count

    def get_total_spend(self, vendor: Vendor, period: Period, include_group: bool = True) -> float:
        """Sum of work-order amounts; 0.0 with no activity."""
        totals = self._totals(self._vendor_ids(vendor, include_group), period.resolve())
        return round(totals.total_spend, 2)

    def get_average_cost_per_wo(
        self, vendor: Vendor, period: Period, include_group: bool = True
    ) -> float | None:
        """Mean amount over work orders with amount > 0; None with no priced work orders."""
        return self._totals(self._vendor_ids(vendor, include_group), period.resolve()).avg_cost_per_wo

    def get_average_completion_time(
        self, vendor: Vendor, period: Period, include_group: bool = True
    ) -> float | None:
        """Mean days from opened to closed over completed/cancelled work orders."""
        return self._totals(self._vendor_ids(vendor, include_group), period.resolve()).avg_completion_time

    def get_metrics(self, vendor: Vendor, period: Period, include_group: bool = True) -> dict:
        """All four core metrics from a single query."""
        return self._totals(self._vendor_ids(vendor, include_group), period.resolve()).as_metrics()

    def get_vendor_summary(self, vendor: Vendor, period: Period) -> dict:
        duplicate_count = 0
        if vendor.is_canonical:
            duplicate_count = self.db.query(func.count(Vendor.id)).filter(
                Vendor.canonical_vendor_id == vendor.id
            ).scalar() or 0

        return {
            "vendor_id": str(vendor.id),
            "company_name": vendor.company_name,
            "is_canonical": vendor.is_canonical,
            "duplicate_count": duplicate_count,
            **self.get_metrics(vendor, period),
            "period": period.to_dict(),
        }

    def get_portfolio_stats(self, period: Period) -> dict:
        """Portfolio-wide work-order totals for the period."""
        date_range = period.resolve()
        row = self.db.query(
            func.count(func.distinct(WorkOrder.vendor_id)).label("unique_vendors"),
            *_totals_columns(),
        ).filter(
            WorkOrder.vendor_id.isnot(None),
            *_in_range(date_range),
        ).one()
        totals = WorkOrderTotals.from_row(row)

        return {
            "total_work_orders": totals.work_order_count,
            "unique_vendors": int(row.unique_vendors or 0),
            "total_spend": round(totals.total_spend, 2),
            "avg_cost_per_wo": totals.avg_cost_per_wo,
            "avg_completion_days": totals.avg_completion_time,
            "completed_work_orders": totals.completed_count,
            "period": period.to_dict(),
        }

    # =========================================================================
    # Bulk metrics
    # =========================================================================

    def get_bulk_totals(
        self, canonical_ids: list[uuid.UUID], date_range: DateRange
    ) -> dict[uuid.UUID, WorkOrderTotals]:
        """Totals per canonical vendor, duplicates folded in. One grouped query."""
        results = {vendor_id: WorkOrderTotals() for vendor_id in canonical_ids}
        if not canonical_ids:
            return results

        mapping = self._canonical_mapping(canonical_ids)
        rows = self.db.query(WorkOrder.vendor_id, *_totals_columns()).filter(
            WorkOrder.vendor_id.in_(list(mapping)),
            *_in_range(date_range),
        ).group_by(WorkOrder.vendor_id).all()

        for row in rows:
            canonical_id = mapping.get(row.vendor_id, row.vendor_id)
            if canonical_id in results:
                results[canonical_id].add(WorkOrderTotals.from_row(row))
        return results

    def get_bulk_metrics_for_vendors(self, vendor_ids: list[uuid.UUID], period: Period) -> dict:
        """Core metrics keyed by vendor id, for many canonical vendors at once."""
        totals = self.get_bulk_totals(list(vendor_ids), period.resolve())
        return {vendor_id: t.as_metrics() for vendor_id, t in totals.items()}

    def get_top_vendors(
        self,
        metric: RankMetric | str,
        limit: int,
        period: Period,
        ascending: bool = False,
    ) -> list[dict]:
        """Top active canonical vendors by a metric among those with work orders in the period."""
        metric = _coerce_metric(metric)
        date_range = period.resolve()

        active_ids = select(WorkOrder.vendor_id).where(
            WorkOrder.vendor_id.isnot(None),
            *_in_range(date_range),
        ).distinct()
        canonical_ids = {
            row.effective_id for row in self.db.query(
                func.coalesce(Vendor.canonical_vendor_id, Vendor.id).label("effective_id")
            ).filter(Vendor.id.in_(active_ids)).all()
        }
        if not canonical_ids:
            return []

        vendors = self.db.query(Vendor).filter(
            Vendor.id.in_(canonical_ids),
            Vendor.canonical_vendor_id.is_(None),
            *Vendor.usable_filters(),
        ).order_by(Vendor.company_name).all()

        metrics = self.get_bulk_metrics_for_vendors([v.id for v in vendors], period)
        key = _RANK_METRIC_KEYS[metric]

        results = [
            {
                "vendor_id": str(vendor.id),
                "company_name": vendor.company_name,
                "vendor_trades": vendor.vendor_trades,
                "value": metrics[vendor.id][key],
            }
            for vendor in vendors
            if metrics[vendor.id][key] is not None
        ]
        results.sort(key=lambda r: r["value"], reverse=not ascending)
        return results[:limit]

    # =========================================================================
    # Trades
    # =========================================================================

    @staticmethod
    def parse_trades(trades: str | None) -> list[str]:
        """'Plumbing, HVAC' -> ['Plumbing', 'HVAC']"""
        if not trades:
            return []
        return [trade.strip() for trade in trades.split(",") if trade.strip()]

    def get_primary_trade(self, vendor: Vendor) -> str | None:
        trades = self.parse_trades(vendor.vendor_trades)
        return trades[0] if trades else None

    def _vendor_query(self, active_only: bool, canonical_only: bool):
        query = self.db.query(Vendor)
        if active_only:
            query = query.filter(*Vendor.usable_filters())
        if canonical_only:
            query = query.filter(Vendor.canonical_vendor_id.is_(None))
        return query

    def get_vendors_by_trade(
        self, trade: str, active_only: bool = True, canonical_only: bool = True
    ) -> list[Vendor]:
        """Vendors whose trade list mentions `trade` (case-insensitive)."""
        return self._vendor_query(active_only, canonical_only).filter(
            Vendor.vendor_trades.ilike(f"%{trade}%")
        ).order_by(Vendor.company_name).all()

    def get_all_trades(self, active_only: bool = True, canonical_only: bool = True) -> list[str]:
        rows = self._vendor_query(active_only, canonical_only).with_entities(
            Vendor.vendor_trades
        ).filter(
            Vendor.vendor_trades.isnot(None),
            Vendor.vendor_trades != "",
        ).all()
        trades = {trade for row in rows for trade in self.parse_trades(row.vendor_trades)}
        return sorted(trades)

    def get_vendors_grouped_by_trade(
        self, active_only: bool = True, canonical_only: bool = True
    ) -> dict[str, list[Vendor]]:
        """Vendors keyed by primary trade, trades sorted by name."""
        vendors = self._vendor_query(active_only, canonical_only).filter(
            Vendor.vendor_trades.isnot(None),
            Vendor.vendor_trades != "",
        ).order_by(Vendor.company_name).all()

        grouped: dict[str, list[Vendor]] = {}
        for vendor in vendors:
            primary = self.get_primary_trade(vendor)
            if primary:
                grouped.setdefault(primary, []).append(vendor)
        return dict(sorted(grouped.items()))

    def get_trade_averages(self, trade: str, period: Period) -> dict:
        """Mean of each metric across the trade's active canonical vendors."""
        vendors = self.get_vendors_by_trade(trade)
        if not vendors:
            return {
                "trade": trade,
                "vendor_count": 0,
                "avg_work_order_count": None,
                "avg_total_spend": None,
                "avg_cost_per_wo": None,
                "avg_completion_time": None,
                "total_work_orders": 0,
                "total_spend": 0.0,
            }

        totals = self.get_bulk_totals([v.id for v in vendors], period.resolve())
        counts = [t.work_order_count for t in totals.values()]
        spends = [t.total_spend for t in totals.values()]
        avg_costs = [t.priced_spend / t.priced_count for t in totals.values() if t.priced_count]
        completion = [
            t.completion_days / t.completed_count for t in totals.values() if t.completed_count
        ]

        return {
            "trade": trade,
            "vendor_count": len(vendors),
            "avg_work_order_count": round(sum(counts) / len(counts), 1),
            "avg_total_spend": round(sum(spends) / len(spends), 2),
            "avg_cost_per_wo": round(sum(avg_costs) / len(avg_costs), 2) if avg_costs else None,
            "avg_completion_time": round(sum(completion) / len(completion), 1) if completion else None,
            "total_work_orders": sum(counts),
            "total_spend": round(sum(spends), 2),
        }

    def get_all_trade_averages(self, period: Period) -> dict[str, dict]:
        return {trade: self.get_trade_averages(trade, period) for trade in self.get_all_trades()}

    def compare_vendor_to_trade_average(self, vendor: Vendor, period: Period) -> dict:
        primary_trade = self.get_primary_trade(vendor)
        if not primary_trade:
            return {
                "vendor_id": str(vendor.id),
                "company_name": vendor.company_name,
                "trade": None,
                "has_trade": False,
                "vendor_metrics": None,
                "trade_averages": None,
                "comparison": None,
            }

        vendor_metrics = self.get_metrics(vendor, period)
        trade_averages = self.get_trade_averages(primary_trade, period)
        baselines = {
            "work_order_count": trade_averages["avg_work_order_count"],
            "total_spend": trade_averages["avg_total_spend"],
            "avg_cost_per_wo": trade_averages["avg_cost_per_wo"],
            "avg_completion_time": trade_averages["avg_completion_time"],
        }

        return {
            "vendor_id": str(vendor.id),
            "company_name": vendor.company_name,
            "trade": primary_trade,
            "has_trade": True,
            "vendor_metrics": vendor_metrics,
            "trade_averages": trade_averages,
            "comparison": {
                key: percent_difference(baselines[key], vendor_metrics[key])
                for key in METRIC_KEYS
            },
        }

    def rank_vendors_in_trade(
        self,
        trade: str,
        metric: RankMetric | str,
        period: Period,
        ascending: bool | None = None,
    ) -> list[dict]:
        """Rank the trade's vendors by one metric.

        Lower-is-better metrics (avg cost, completion time) rank ascending by
        default. Vendors without a value sort last and get no rank.
        """
        metric = _coerce_metric(metric)
        if ascending is None:
            ascending = metric in LOWER_IS_BETTER

        vendors = self.get_vendors_by_trade(trade)
        if not vendors:
            return []

        metrics = self.get_bulk_metrics_for_vendors([v.id for v in vendors], period)
        key = _RANK_METRIC_KEYS[metric]

        ranked = [
            {
                "vendor_id": str(vendor.id),
                "company_name": vendor.company_name,
                "value": metrics[vendor.id][key],
            }
            for vendor in vendors
        ]
        with_values = [r for r in ranked if r["value"] is not None]
        without_values = [r for r in ranked if r["value"] is None]
        with_values.sort(key=lambda r: r["value"], reverse=not ascending)

        total = len(with_values)
        trade_mean = sum(r["value"] for r in with_values) / total if total else None
        for index, item in enumerate(with_values, start=1):
            item["rank"] = index
            item["total_in_trade"] = total
            item["percentile"] = round((total - index + 1) / total * 100, 1)
            comparison = percent_difference(trade_mean, item["value"])
            item["direction"] = comparison["direction"] if comparison else None
        for item in without_values:
            item.update(rank=None, total_in_trade=total, percentile=None, direction=None)

        return with_values + without_values

    @staticmethod
    def find_vendor_rank(ranked: list[dict], vendor_id: uuid.UUID) -> dict | None:
        for item in ranked:
            if item["vendor_id"] == str(vendor_id):
                return {
                    "rank": item["rank"],
                    "total": item["total_in_trade"],
                    "percentile": item["percentile"],
                    "value": item["value"],
                    "direction": item["direction"],
                }
        return None

    def get_vendor_trade_analysis(self, vendor: Vendor, period: Period) -> dict:
        """Trade comparison plus the vendor's rank on every metric."""
        primary_trade = self.get_primary_trade(vendor)
        rankings = None
        if primary_trade:
            rankings = {
                metric.value: self.find_vendor_rank(
                    self.rank_vendors_in_trade(primary_trade, metric, period), vendor.id
                )
                for metric in RankMetric
            }

        return {
            "vendor_id": str(vendor.id),
            "company_name": vendor.company_name,
            "primary_trade": primary_trade,
            "all_trades": self.parse_trades(vendor.vendor_trades),
            "comparison": self.compare_vendor_to_trade_average(vendor, period),
            "rankings": rankings,
        }

    def get_trade_summary(self, period: Period) -> list[dict]:
        """One row per trade, busiest trades first."""
        summary = []
        for trade in self.get_all_trades():
            averages = self.get_trade_averages(trade, period)
            summary.append({
                "trade": trade,
                "vendor_count": averages["vendor_count"],
                "total_work_orders": averages["total_work_orders"],
                "total_spend": averages["total_spend"],
                "avg_work_order_count": averages["avg_work_order_count"],
                "avg_cost_per_wo": averages["avg_cost_per_wo"],
                "avg_completion_time": averages["avg_completion_time"],
            })
        summary.sort(key=lambda row: row["total_work_orders"], reverse=True)
        return summary

    # =========================================================================
    # Trends and period comparison
    # =========================================================================

    def get_vendor_trend(
        self,
        vendor: Vendor,
        periods: int = 12,
        granularity: TrendGranularity | str = TrendGranularity.MONTH,
        reference: date | None = None,
    ) -> dict:
        """Metric series over the trailing `periods` buckets, from one grouped query."""
        granularity = _coerce_granularity(granularity)
        reference = reference or date.today()
        starts = trailing_buckets(reference, periods, granularity)
        date_range = trailing_range(reference, periods, granularity)

        bucket = truncate_to(WorkOrder.opened_at, granularity)
        rows = self.db.query(bucket.label("bucket"), *_totals_columns()).filter(
            WorkOrder.vendor_id.in_(get_group_vendor_ids(self.db, vendor)),
            *_in_range(date_range),
        ).group_by(bucket).all()
        by_bucket = {to_date(row.bucket): WorkOrderTotals.from_row(row) for row in rows}

        data = [
            {
                "period": bucket_label(start, granularity),
                "date": start.isoformat(),
                **by_bucket.get(start, WorkOrderTotals()).as_metrics(),
            }
            for start in starts
        ]

        return {
            "data": data,
            "trends": {key: trend_direction([row[key] for row in data]) for key in METRIC_KEYS},
            "period_type": granularity.value,
            "periods": periods,
        }

    def get_period_comparison(self, vendor: Vendor, reference: date | None = None) -> dict:
        """Current vs previous window for 30 days, 90 days, 12 months and year to date."""
        reference = reference or date.today()
        windows = _comparison_windows(reference)

        overall = DateRange(
            start=min(r.start for pair in windows.values() for r in pair),
            end=max(r.end for pair in windows.values() for r in pair),
        )
        rows = self.db.query(
            WorkOrder.opened_at,
            WorkOrder.amount,
            case((_closed_condition(), _completion_days_column())).label("completion_days"),
        ).filter(
            WorkOrder.vendor_id.in_(get_group_vendor_ids(self.db, vendor)),
            *_in_range(overall),
        ).all()

        def totals_for(date_range: DateRange) -> dict:
            totals = WorkOrderTotals()
            for row in rows:
                if not date_range.contains(row.opened_at):
                    continue
                amount = as_float(row.amount)
                totals.work_order_count += 1
                totals.total_spend += amount or 0.0
                if amount is not None and amount > 0:
                    totals.priced_spend += amount
                    totals.priced_count += 1
                if row.completion_days is not None:
                    totals.completion_days += float(row.completion_days)
                    totals.completed_count += 1
            return totals.as_metrics()

        comparison = {}
        for name, (current_range, previous_range) in windows.items():
            current = totals_for(current_range)
            previous = totals_for(previous_range)
            comparison[name] = {
                "current": current,
                "previous": previous,
                "changes": {key: percent_change(previous[key], current[key]) for key in METRIC_KEYS},
            }
        return comparison

    # =========================================================================
    # Response times
    # =========================================================================

    def _completion_rows(self, date_range: DateRange, vendor_ids: list[uuid.UUID] | None = None):
        query = self.db.query(
            _completion_days_column().label("days"),
            WorkOrder.priority,
        ).filter(
            _closed_condition(),
            *_in_range(date_range),
        )
        if vendor_ids is None:
            query = query.filter(WorkOrder.vendor_id.isnot(None))
        else:
            query = query.filter(WorkOrder.vendor_id.in_(vendor_ids))
        return query.all()

    @staticmethod
    def _metrics_by_priority(rows) -> dict:
        grouped: dict[str, list[float]] = {}
        for row in rows:
            priority = row.priority or WorkOrderPriority.UNSPECIFIED.value
            grouped.setdefault(priority, []).append(round(float(row.days), 1))

        def order(priority: str) -> int:
            return PRIORITY_ORDER.index(priority) if priority in PRIORITY_ORDER else len(PRIORITY_ORDER)

        return {
            priority: {
                "count": len(days),
                "avg_days": round(sum(days) / len(days), 1),
                "median_days": median(days),
                "min_days": min(days),
                "max_days": max(days),
            }
            for priority, days in sorted(grouped.items(), key=lambda item: order(item[0]))
        }

    def get_response_time_metrics(
        self, vendor: Vendor, period: Period, include_group: bool = True
    ) -> dict:
        """Completion-time statistics, per-priority breakdown and day buckets."""
        rows = self._completion_rows(period.resolve(), self._vendor_ids(vendor, include_group))
        if not rows:
            return {
                "total_completed": 0,
                "avg_days_to_complete": None,
                "median_days_to_complete": None,
                "min_days_to_complete": None,
                "max_days_to_complete": None,
                "by_priority": {},
                "completion_buckets": completion_buckets([]),
            }

        days = sorted(round(float(row.days), 1) for row in rows)
        return {
            "total_completed": len(days),
            "avg_days_to_complete": round(sum(days) / len(days), 1),
            "median_days_to_complete": median(days),
            "min_days_to_complete": days[0],
            "max_days_to_complete": days[-1],
            "by_priority": self._metrics_by_priority(rows),
            "completion_buckets": completion_buckets(days),
        }

    def get_portfolio_response_time_metrics(self, period: Period) -> dict:
        rows = self._completion_rows(period.resolve())
        if not rows:
            return {
                "total_completed": 0,
                "avg_days_to_complete": None,
                "median_days_to_complete": None,
                "by_priority": {},
            }

        days = [round(float(row.days), 1) for row in rows]
        return {
            "total_completed": len(days),
            "avg_days_to_complete": round(sum(days) / len(days), 1),
            "median_days_to_complete": median(days),
            "by_priority": self._metrics_by_priority(rows),
        }

    def compare_response_time_to_portfolio(self, vendor: Vendor, period: Period) -> dict:
        vendor_metrics = self.get_response_time_metrics(vendor, period)
        portfolio_metrics = self.get_portfolio_response_time_metrics(period)

        vendor_avg = vendor_metrics["avg_days_to_complete"]
        portfolio_avg = portfolio_metrics["avg_days_to_complete"]
        is_faster = None
        if vendor_avg is not None and portfolio_avg is not None:
            is_faster = vendor_avg < portfolio_avg

        return {
            "vendor_id": str(vendor.id),
            "company_name": vendor.company_name,
            "vendor_metrics": vendor_metrics,
            "portfolio_metrics": portfolio_metrics,
            "comparison": {
                "avg_days": percent_difference(portfolio_avg, vendor_avg),
                "median_days": percent_difference(
                    portfolio_metrics["median_days_to_complete"],
                    vendor_metrics["median_days_to_complete"],
                ),
            },
            "is_faster_than_average": is_faster,
        }

    def rank_vendors_by_response_time(
        self, period: Period, limit: int = 10, min_work_orders: int = 3
    ) -> list[dict]:
        """Fastest active canonical vendors, duplicates folded into their canonical."""
        date_range = period.resolve()
        rows = self.db.query(
            func.coalesce(Vendor.canonical_vendor_id, Vendor.id).label("canonical_id"),
            func.count(WorkOrder.id).label("completed_count"),
            func.sum(_completion_days_column()).label("total_days"),
        ).join(
            Vendor, WorkOrder.vendor_id == Vendor.id
        ).filter(
            _closed_condition(),
            *_in_range(date_range),
        ).group_by(
            func.coalesce(Vendor.canonical_vendor_id, Vendor.id)
        ).having(
            func.count(WorkOrder.id) >= min_work_orders
        ).all()
        if not rows:
            return []

        vendors = {
            v.id: v for v in self.db.query(Vendor).filter(
                Vendor.id.in_([row.canonical_id for row in rows]),
                *Vendor.usable_filters(),
            ).all()
        }

        ranked = [
            {
                "vendor_id": str(row.canonical_id),
                "company_name": vendors[row.canonical_id].company_name,
                "vendor_trades": vendors[row.canonical_id].vendor_trades,
                "completed_count": int(row.completed_count),
                "avg_days_to_complete": round(float(row.total_days) / int(row.completed_count), 1),
            }
            for row in rows
            if row.canonical_id in vendors
        ]
        ranked.sort(key=lambda item: (item["avg_days_to_complete"], item["company_name"]))
        ranked = ranked[:limit]
        for index, item in enumerate(ranked, start=1):
            item["rank"] = index
        return ranked

    def get_response_time_trend(
        self,
        vendor: Vendor,
        periods: int = 12,
        granularity: TrendGranularity | str = TrendGranularity.MONTH,
        reference: date | None = None,
    ) -> dict:
        """Completion-time series; a falling average is 'improving'."""
        granularity = _coerce_granularity(granularity)
        reference = reference or date.today()
        starts = trailing_buckets(reference, periods, granularity)
        date_range = trailing_range(reference, periods, granularity)

        bucket = truncate_to(WorkOrder.opened_at, granularity)
        rows = self.db.query(
            bucket.label("bucket"),
            _completion_days_column().label("days"),
        ).filter(
            WorkOrder.vendor_id.in_(get_group_vendor_ids(self.db, vendor)),
            _closed_condition(),
            *_in_range(date_range),
        ).all()

        days_by_bucket: dict[date, list[float]] = {}
        for row in rows:
            days_by_bucket.setdefault(to_date(row.bucket), []).append(round(float(row.days), 1))

        data = []
        for start in starts:
            days = days_by_bucket.get(start, [])
            data.append({
                "period": bucket_label(start, granularity),
                "date": start.isoformat(),
                "completed_count": len(days),
                "avg_days_to_complete": round(sum(days) / len(days), 1) if days else None,
                "median_days_to_complete": median(days),
            })

        direction = trend_direction([row["avg_days_to_complete"] for row in data])
        trend = {
            "increasing": "slowing",
            "decreasing": "improving",
        }.get(direction, direction)

        return {"data": data, "trend": trend, "period_type": granularity.value}

    # =========================================================================
    # Work orders and vendor comparison
    # =========================================================================

    def get_spend_by_property(self, vendor: Vendor, limit: int = 10) -> list[dict]:
        rows = self.db.query(
            WorkOrder.property_id,
            Property.name,
            func.sum(WorkOrder.amount).label("total_spend"),
            func.count(WorkOrder.id).label("work_order_count"),
        ).outerjoin(
            Property, WorkOrder.property_id == Property.id
        ).filter(
            WorkOrder.vendor_id.in_(get_group_vendor_ids(self.db, vendor)),
            WorkOrder.property_id.isnot(None),
            WorkOrder.amount > 0,
        ).group_by(
            WorkOrder.property_id, Property.name
        ).order_by(
            func.sum(WorkOrder.amount).desc()
        ).limit(limit).all()

        return [
            {
                "property_id": str(row.property_id),
                "property_name": row.name or "Unknown",
                "total_spend": round(float(row.total_spend), 2),
                "work_order_count": int(row.work_order_count),
            }
            for row in rows
        ]

    def get_vendor_work_order_stats(self, vendor: Vendor) -> dict:
        """All-time status counts and spend for the vendor group."""
        def status_count(status: WorkOrderStatus):
            return func.count(case((WorkOrder.status == status.value, 1)))

        row = self.db.query(
            func.count(WorkOrder.id).label("total"),
            status_count(WorkOrderStatus.COMPLETED).label("completed"),
            status_count(WorkOrderStatus.OPEN).label("open"),
            status_count(WorkOrderStatus.IN_PROGRESS).label("in_progress"),
            func.coalesce(func.sum(WorkOrder.amount), 0).label("total_spend"),
        ).filter(
            WorkOrder.vendor_id.in_(get_group_vendor_ids(self.db, vendor))
        ).one()

        return {
            "total": int(row.total or 0),
            "completed": int(row.completed or 0),
            "open": int(row.open or 0),
            "in_progress": int(row.in_progress or 0),
            "total_spend": round(float(row.total_spend or 0), 2),
        }

    def get_vendors_for_comparison(
        self, trade: str, period: Period, today: date | None = None
    ) -> list[dict]:
        """Side-by-side metrics (and insurance status) for a trade's vendors."""
        vendors = self.get_vendors_by_trade(trade)
        metrics = self.get_bulk_metrics_for_vendors([v.id for v in vendors], period)

        return [
            {
                "id": str(vendor.id),
                "company_name": vendor.company_name,
                "contact_name": vendor.contact_name,
                "phone": vendor.phone,
                "email": vendor.email,
                "is_active": vendor.is_active,
                **metrics[vendor.id],
                "insurance_status": get_insurance_status(vendor, today),
            }
            for vendor in vendors
        ]

    @staticmethod
    def calculate_comparison_stats(vendors: list[dict]) -> dict:
        """Best / worst / mean per metric. Needs at least two vendors."""
        if len(vendors) < 2:
            return {}

        comparison = {}
        for key in METRIC_KEYS:
            values = [v[key] for v in vendors if v.get(key) is not None]
            if not values:
                continue
            # More work and more spend mean more usage; cost and time are better low
            higher_is_better = key in ("work_order_count", "total_spend")
            comparison[key] = {
                "best": max(values) if higher_is_better else min(values),
                "worst": min(values) if higher_is_better else max(values),
                "avg": sum(values) / len(values),
            }
        return comparison


def _coerce_metric(metric: RankMetric | str) -> RankMetric:
    try:
        return RankMetric(metric)
    except ValueError:
        raise InvalidMetricError(f"Invalid metric: {metric}") from None


def _coerce_granularity(granularity: TrendGranularity | str) -> TrendGranularity:
    try:
        return TrendGranularity(granularity)
    except ValueError:
        raise InvalidMetricError(
            f"Invalid period type '{granularity}'. Allowed values are: month, quarter, year."
        ) from None


def _comparison_windows(reference: date) -> dict[str, tuple[DateRange, DateRange]]:
    """(current, previous) ranges for each period-over-period comparison."""
    def trailing_days(period_type: PeriodType, days: int) -> tuple[DateRange, DateRange]:
        current = Period(type=period_type, date=reference).resolve()
        previous = DateRange(start=current.start - timedelta(days=days), end=current.start)
        return current, previous

    last_12 = Period(type=PeriodType.LAST_12_MONTHS, date=reference).resolve()
    previous_12 = Period(type=PeriodType.LAST_12_MONTHS, date=last_12.start).resolve()

    return {
        "last_30_days": trailing_days(PeriodType.LAST_30_DAYS, 30),
        "last_90_days": trailing_days(PeriodType.LAST_90_DAYS, 90),
        "last_12_months": (last_12, previous_12),
        "year_to_date": (
            Period(type=PeriodType.YTD, date=reference).resolve(),
            Period(type=PeriodType.YTD, date=subtract_years(reference, 1)).resolve(),
        ),
    }
