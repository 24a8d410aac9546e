"""Reporting periods and their date ranges.

A Period is a named, date-anchored window. Every metric is scoped by one, and
every period resolves to exactly one half-open range [start, end).

Resolution rules (reference date 2025-06-15):
- month           -> [2025-06-01, 2025-07-01)
- last_month      -> [2025-05-01, 2025-06-01)
- last_3_months   -> [2025-03-01, 2025-06-01)   full months, current excluded
- quarter         -> [2025-04-01, 2025-07-01)
- ytd             -> [2025-01-01, 2025-06-16)   reference date inclusive
- year            -> [2025-01-01, 2026-01-01)
- last_30_days    -> [2025-05-16, 2025-06-16)
"""

from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .exceptions import InvalidMetricError


class PeriodType(str, Enum):
    """Named reporting windows."""

    MONTH = "month"
    """Reference date's calendar month."""

    LAST_MONTH = "last_month"
    """Previous calendar month."""

    LAST_3_MONTHS = "last_3_months"
    """Three full months ending the month before the reference date."""

    LAST_6_MONTHS = "last_6_months"
    LAST_12_MONTHS = "last_12_months"

    QUARTER = "quarter"
    """Reference date's calendar quarter."""

    YTD = "ytd"
    """January 1 through the reference date (inclusive)."""

    YEAR = "year"
    """Full reference calendar year."""

    LAST_30_DAYS = "last_30_days"
    """Rolling 30 days ending on the reference date."""

    LAST_90_DAYS = "last_90_days"


class TrendGranularity(str, Enum):
    """Bucket size for trend series."""

    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"


DEFAULT_PERIOD_TYPE = PeriodType.MONTH

# Period has a field named `date`; annotate through an alias
ReferenceDate = date

_TRAILING_MONTHS = {
    PeriodType.LAST_3_MONTHS: 3,
    PeriodType.LAST_6_MONTHS: 6,
    PeriodType.LAST_12_MONTHS: 12,
}

_TRAILING_DAYS = {
    PeriodType.LAST_30_DAYS: 30,
    PeriodType.LAST_90_DAYS: 90,
}


def shift_month(year: int, month: int, delta: int) -> date:
    """First day of the month `delta` months away from (year, month)."""
    index = year * 12 + (month - 1) + delta
    return date(index // 12, index % 12 + 1, 1)


def quarter_of(d: date) -> int:
    return (d.month - 1) // 3 + 1


def subtract_years(d: date, years: int) -> date:
    """Same calendar day `years` earlier (Feb 29 becomes Feb 28)."""
    try:
        return d.replace(year=d.year - years)
    except ValueError:
        return d.replace(year=d.year - years, day=28)


class DateRange(BaseModel):
    """Half-open date range [start, end)."""

    model_config = ConfigDict(frozen=True)

    start: date
    end: date = Field(description="Exclusive upper bound")

    @property
    def last_day(self) -> date:
        """Inclusive last day of the range."""
        return self.end - timedelta(days=1)

    @property
    def start_at(self) -> datetime:
        return datetime.combine(self.start, time.min)

    @property
    def end_at(self) -> datetime:
        return datetime.combine(self.end, time.min)

    def contains(self, value: date | datetime) -> bool:
        if isinstance(value, datetime):
            return self.start_at <= value < self.end_at
        return self.start <= value < self.end

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.last_day.isoformat()}


class Period(BaseModel):
    """A period type anchored at a reference date.

    Constructing a Period with an unknown type raises a ValidationError;
    request handlers go through `from_request`, where an invalid period
    falls back to month.
    """

    model_config = ConfigDict(frozen=True)

    type: PeriodType = Field(
        default=DEFAULT_PERIOD_TYPE,
        description="Named window, e.g. month, last_3_months, ytd"
    )
    date: ReferenceDate = Field(
        default_factory=ReferenceDate.today,
        description="Reference date the window is anchored at"
    )

    @classmethod
    def from_request(cls, period_type: Any = None, reference: ReferenceDate | None = None) -> "Period":
        """Build a period from untrusted input; invalid period falls back to month."""
        try:
            resolved_type = PeriodType(period_type)
        except ValueError:
            resolved_type = DEFAULT_PERIOD_TYPE
        return cls(type=resolved_type, date=reference or date.today())

    def resolve(self) -> DateRange:
        """Resolve to the half-open [start, end) range for this period."""
        ref = self.date
        period_type = self.type

        if period_type == PeriodType.MONTH:
            return DateRange(start=ref.replace(day=1), end=shift_month(ref.year, ref.month, 1))

        if period_type == PeriodType.LAST_MONTH:
            return DateRange(start=shift_month(ref.year, ref.month, -1), end=ref.replace(day=1))

        if period_type in _TRAILING_MONTHS:
            months = _TRAILING_MONTHS[period_type]
            return DateRange(
                start=shift_month(ref.year, ref.month, -months),
                end=ref.replace(day=1),
            )

        if period_type == PeriodType.QUARTER:
            start = date(ref.year, 3 * (quarter_of(ref) - 1) + 1, 1)
            return DateRange(start=start, end=shift_month(start.year, start.month, 3))

        if period_type == PeriodType.YTD:
            return DateRange(start=date(ref.year, 1, 1), end=ref + timedelta(days=1))

        if period_type == PeriodType.YEAR:
            return DateRange(start=date(ref.year, 1, 1), end=date(ref.year + 1, 1, 1))

        if period_type in _TRAILING_DAYS:
            days = _TRAILING_DAYS[period_type]
            return DateRange(start=ref - timedelta(days=days), end=ref + timedelta(days=1))

        raise ValueError(f"Unhandled period type: {period_type}")

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type.value, **self.resolve().to_dict()}


# =============================================================================
# Trend buckets
# =============================================================================


def bucket_start(d: date, granularity: TrendGranularity) -> date:
    """Start of the trend bucket containing `d`."""
    if granularity == TrendGranularity.MONTH:
        return d.replace(day=1)
    if granularity == TrendGranularity.QUARTER:
        return date(d.year, 3 * (quarter_of(d) - 1) + 1, 1)
    return date(d.year, 1, 1)


def bucket_label(start: date, granularity: TrendGranularity) -> str:
    """Display label: 'Jun 2025', 'Q2 2025' or '2025'."""
    if granularity == TrendGranularity.MONTH:
        return start.strftime("%b %Y")
    if granularity == TrendGranularity.QUARTER:
        return f"Q{quarter_of(start)} {start.year}"
    return str(start.year)


def bucket_period(start: date, granularity: TrendGranularity) -> Period:
    """The point-in-time Period equivalent to one trend bucket."""
    period_type = {
        TrendGranularity.MONTH: PeriodType.MONTH,
        TrendGranularity.QUARTER: PeriodType.QUARTER,
        TrendGranularity.YEAR: PeriodType.YEAR,
    }[granularity]
    return Period(type=period_type, date=start)


def trailing_buckets(
    reference: date,
    periods: int,
    granularity: TrendGranularity,
) -> list[date]:
    """Start dates of the `periods` buckets ending with the one containing `reference`, oldest first."""
    if periods < 1:
        raise InvalidMetricError(f"Invalid number of periods: {periods}")
    current = bucket_start(reference, granularity)
    step = {
        TrendGranularity.MONTH: 1,
        TrendGranularity.QUARTER: 3,
        TrendGranularity.YEAR: 12,
    }[granularity]
    return [
        shift_month(current.year, current.month, -step * offset)
        for offset in range(periods - 1, -1, -1)
    ]


def trailing_range(
    reference: date,
    periods: int,
    granularity: TrendGranularity,
) -> DateRange:
    """Overall range covered by `trailing_buckets`."""
    starts = trailing_buckets(reference, periods, granularity)
    return DateRange(start=starts[0], end=bucket_period(starts[-1], granularity).resolve().end)
