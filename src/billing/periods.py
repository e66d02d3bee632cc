"""Calendar helpers for billing periods and monthly usage windows (UTC)."""

import calendar
from datetime import UTC, datetime


def add_months(value: datetime, months: int) -> datetime:
    """
    Add calendar months, clamping the day to the target month's length.

    Examples:
        2024-01-31 + 1 month -> 2024-02-29
        2024-03-15 + 3 months -> 2024-06-15
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def month_window(now: datetime) -> tuple[datetime, datetime]:
    """
    Calendar month containing now, as [first instant, first instant of next month).

    Naive datetimes are treated as UTC.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    now = now.astimezone(UTC)
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return start, add_months(start, 1)
