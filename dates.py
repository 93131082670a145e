"""Calendar-date handling shared by every module.

Transaction dates are calendar dates with no time of day. Whenever one has to
be compared against a moment in time it is pinned to an instant in UTC at
midday (or at an explicit hour), so no local offset can move it to the
neighbouring day. All "now" values handled here are aware UTC datetimes.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Union

REFERENCE_HOUR = 12

_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d.%m.%Y")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(moment: datetime) -> datetime:
    """Naive datetimes coming from the store are UTC already."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def reference_instant(day: date, hour: int = REFERENCE_HOUR) -> datetime:
    return datetime.combine(day, time(hour=hour), tzinfo=timezone.utc)


def parse_calendar_date(value: Union[str, date, datetime, None]) -> Optional[date]:
    """Return the calendar date in ``value`` or None when it cannot be read.

    Full ISO timestamps keep only their date part as written, never shifted
    through a timezone conversion.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = value.strip()
    if len(text) > 10 and text[10] in ("T", " "):
        text = text[:10]
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def month_start(d: date) -> date:
    return d.replace(day=1)


def add_months(d: date, count: int) -> date:
    """First day of the month ``count`` months away from ``d``."""
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


def month_end(d: date) -> date:
    return add_months(d, 1) - date.resolution


def same_month(d: date, year: int, month: int) -> bool:
    return d.year == year and d.month == month


def subtract_months(d: date, count: int) -> date:
    """Same day ``count`` months earlier, clamped to the end of shorter months."""
    first = add_months(d, -count)
    return min(first + timedelta(days=d.day - 1), month_end(first))
