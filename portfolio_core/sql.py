"""Dialect-aware SQL expressions used by the aggregation queries.

PostgreSQL is the production store; SQLite backs the test suite. Both
expressions compile to native date arithmetic so grouping and averaging
stay inside the database.
"""

from datetime import date, datetime

from sqlalchemy import Float, String
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql.expression import FunctionElement, literal_column

from .periods import TrendGranularity


class days_between(FunctionElement):
    """Fractional days from the first argument to the second.

    days_between(opened_at, closed_at)
    """

    type = Float()
    name = "days_between"
    inherit_cache = True


@compiles(days_between)
def _days_between_postgresql(element, compiler, **kw):
    start, end = list(element.clauses)
    return "(EXTRACT(EPOCH FROM (%s - %s)) / 86400)" % (
        compiler.process(end, **kw),
        compiler.process(start, **kw),
    )


@compiles(days_between, "sqlite")
def _days_between_sqlite(element, compiler, **kw):
    start, end = list(element.clauses)
    return "(julianday(%s) - julianday(%s))" % (
        compiler.process(end, **kw),
        compiler.process(start, **kw),
    )


class period_start(FunctionElement):
    """Truncate a date/timestamp column to the start of its trend bucket.

    period_start(opened_at, literal_column("'month'"))
    """

    type = String()
    name = "period_start"
    inherit_cache = True


@compiles(period_start)
def _period_start_postgresql(element, compiler, **kw):
    column, unit = list(element.clauses)
    return "date_trunc(%s, %s)" % (compiler.process(unit, **kw), compiler.process(column, **kw))


@compiles(period_start, "sqlite")
def _period_start_sqlite(element, compiler, **kw):
    column, unit = list(element.clauses)
    col = compiler.process(column, **kw)
    granularity = compiler.process(unit, **kw).strip("'")
    if granularity == "year":
        return f"date({col}, 'start of year')"
    if granularity == "quarter":
        return (
            f"date({col}, 'start of month', "
            f"'-' || ((CAST(strftime('%m', {col}) AS INTEGER) - 1) % 3) || ' months')"
        )
    return f"date({col}, 'start of month')"


def truncate_to(column, granularity: TrendGranularity):
    """Bucket expression for GROUP BY over `column`."""
    return period_start(column, literal_column(f"'{granularity.value}'"))


def to_date(value) -> date | None:
    """Normalize a bucket value (timestamp, date or ISO string) to a date."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def as_float(value) -> float | None:
    """Numeric/Decimal aggregate to float, keeping None."""
    return float(value) if value is not None else None
