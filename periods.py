from dataclasses import dataclass
from datetime import date
from typing import Optional

from dates import month_end, month_start, parse_calendar_date, utcnow


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Optional[Period]:
    """Date range for a transaction listing. ``None`` means no date bound."""
    today = today or utcnow().date()
    if period == "all":
        return None
    if period == "last_month":
        last_month_end = month_start(today) - date.resolution
        return Period("last_month", month_start(last_month_end), last_month_end)
    if period == "this_month":
        return Period("this_month", month_start(today), month_end(today))
    if period == "custom" or (start or end):
        start_date = parse_calendar_date(start) if start else month_start(today)
        end_date = parse_calendar_date(end) if end else today
        if start_date is None or end_date is None:
            raise ValueError("Invalid date range")
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Period("custom", start_date, end_date)
    if period:
        raise ValueError(f"Unknown period: {period}")

    # first of the month up to today
    return Period("month_to_date", month_start(today), today)

