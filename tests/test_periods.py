"""Tests for period resolution and trend buckets."""
from datetime import date, datetime

import pytest
from pydantic import ValidationError

from portfolio_core.exceptions import InvalidMetricError
from portfolio_core.periods import (
    DateRange,
    Period,
    PeriodType,
    TrendGranularity,
    bucket_label,
    bucket_period,
    subtract_years,
    trailing_buckets,
    trailing_range,
)

REFERENCE = date(2025, 6, 15)


@pytest.mark.parametrize(
    "period_type, start, end",
    [
        (PeriodType.MONTH, date(2025, 6, 1), date(2025, 7, 1)),
        (PeriodType.LAST_MONTH, date(2025, 5, 1), date(2025, 6, 1)),
        (PeriodType.LAST_3_MONTHS, date(2025, 3, 1), date(2025, 6, 1)),
        (PeriodType.LAST_6_MONTHS, date(2024, 12, 1), date(2025, 6, 1)),
        (PeriodType.LAST_12_MONTHS, date(2024, 6, 1), date(2025, 6, 1)),
        (PeriodType.QUARTER, date(2025, 4, 1), date(2025, 7, 1)),
        (PeriodType.YTD, date(2025, 1, 1), date(2025, 6, 16)),
        (PeriodType.YEAR, date(2025, 1, 1), date(2026, 1, 1)),
        (PeriodType.LAST_30_DAYS, date(2025, 5, 16), date(2025, 6, 16)),
        (PeriodType.LAST_90_DAYS, date(2025, 3, 17), date(2025, 6, 16)),
    ],
)
def test_period_resolves_to_half_open_range(period_type, start, end) -> None:
    resolved = Period(type=period_type, date=REFERENCE).resolve()

    assert resolved == DateRange(start=start, end=end)


def test_last_3_months_excludes_the_reference_month() -> None:
    resolved = Period(type=PeriodType.LAST_3_MONTHS, date=REFERENCE).resolve()

    assert not resolved.contains(date(2025, 6, 1))
    assert resolved.contains(date(2025, 3, 1))
    assert resolved.contains(date(2025, 5, 31))


def test_ytd_includes_the_reference_day() -> None:
    resolved = Period(type=PeriodType.YTD, date=REFERENCE).resolve()

    assert resolved.contains(datetime(2025, 6, 15, 23, 59))
    assert not resolved.contains(datetime(2025, 6, 16, 0, 0))
    assert resolved.to_dict() == {"start": "2025-01-01", "end": "2025-06-15"}


def test_last_month_crosses_year_boundary() -> None:
    resolved = Period(type=PeriodType.LAST_MONTH, date=date(2025, 1, 10)).resolve()

    assert resolved == DateRange(start=date(2024, 12, 1), end=date(2025, 1, 1))


def test_unknown_period_type_is_rejected_at_construction() -> None:
    with pytest.raises(ValidationError):
        Period(type="fortnight", date=REFERENCE)


def test_from_request_falls_back_to_month() -> None:
    period = Period.from_request("fortnight", REFERENCE)

    assert period.type == PeriodType.MONTH
    assert period.resolve().start == date(2025, 6, 1)


def test_from_request_accepts_string_types() -> None:
    assert Period.from_request("ytd", REFERENCE).type == PeriodType.YTD


def test_period_to_dict_reports_inclusive_end() -> None:
    assert Period(type=PeriodType.MONTH, date=REFERENCE).to_dict() == {
        "type": "month",
        "start": "2025-06-01",
        "end": "2025-06-30",
    }


def test_subtract_years_handles_leap_day() -> None:
    assert subtract_years(date(2024, 2, 29), 1) == date(2023, 2, 28)
    assert subtract_years(REFERENCE, 1) == date(2024, 6, 15)


def test_bucket_labels() -> None:
    assert bucket_label(date(2025, 6, 1), TrendGranularity.MONTH) == "Jun 2025"
    assert bucket_label(date(2025, 4, 1), TrendGranularity.QUARTER) == "Q2 2025"
    assert bucket_label(date(2025, 1, 1), TrendGranularity.YEAR) == "2025"


def test_trailing_buckets_are_oldest_first() -> None:
    starts = trailing_buckets(REFERENCE, 3, TrendGranularity.MONTH)

    assert starts == [date(2025, 4, 1), date(2025, 5, 1), date(2025, 6, 1)]


def test_trailing_quarters_cross_years() -> None:
    starts = trailing_buckets(date(2025, 2, 3), 3, TrendGranularity.QUARTER)

    assert starts == [date(2024, 7, 1), date(2024, 10, 1), date(2025, 1, 1)]


def test_trailing_range_covers_every_bucket() -> None:
    resolved = trailing_range(REFERENCE, 12, TrendGranularity.MONTH)

    assert resolved == DateRange(start=date(2024, 7, 1), end=date(2025, 7, 1))


@pytest.mark.parametrize("periods", [0, -3])
def test_trailing_buckets_reject_non_positive_counts(periods) -> None:
    with pytest.raises(InvalidMetricError):
        trailing_range(REFERENCE, periods, TrendGranularity.MONTH)


def test_bucket_period_matches_point_in_time_period() -> None:
    period = bucket_period(date(2025, 4, 1), TrendGranularity.QUARTER)

    assert period.type == PeriodType.QUARTER
    assert period.resolve() == DateRange(start=date(2025, 4, 1), end=date(2025, 7, 1))
