"""Date coercion helpers.

Every calendar day in the stats tables is a UTC day.  Rows come back from
asyncpg as ``date`` or ``datetime`` (naive or aware) depending on the column
type, and callers pass ISO strings from the CLI; everything funnels through
:func:`coerce_date` / :func:`coerce_datetime` so the rest of the code only
ever sees ``date`` objects and aware UTC datetimes.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def coerce_datetime(value: datetime | date | str) -> datetime:
    """Normalize *value* to an aware UTC datetime.

    Naive datetimes are assumed to already be UTC.  A bare ``date`` becomes
    midnight UTC of that day.  Strings are parsed as ISO 8601; a trailing
    ``Z`` is accepted.
    """
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(text)
        except ValueError as e:
            raise ValueError(f"Unrecognised date/time string: {value!r}") from e

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=UTC)

    raise TypeError(f"Cannot coerce {type(value).__name__} to datetime")


def coerce_date(value: datetime | date | str) -> date:
    """Normalize *value* to the UTC calendar day it falls on."""
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    return coerce_datetime(value).date()


def day_start(value: datetime | date | str) -> datetime:
    """Midnight UTC of the day *value* falls on."""
    return datetime.combine(coerce_date(value), time.min, tzinfo=UTC)


def day_bounds(value: datetime | date | str) -> tuple[datetime, datetime]:
    """Half-open ``[start, end)`` UTC range covering the day of *value*."""
    start = day_start(value)
    return start, start + timedelta(days=1)


def month_key(day: date) -> str:
    """``YYYY-MM`` bucket for *day*."""
    return f"{day.year:04d}-{day.month:02d}"
