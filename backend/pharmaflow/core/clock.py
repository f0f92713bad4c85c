# backend/pharmaflow/core/clock.py
"""UTC helpers. Timestamps are stored as naive UTC datetimes."""
import calendar
from datetime import date, datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_today() -> date:
    return utcnow().date()


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def iso(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_naive_utc(value).isoformat(timespec="milliseconds") + "Z"
    return value.isoformat()


def last_day_of_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def add_months(value: datetime, months: int) -> datetime:
    """Calendar month arithmetic; the day is clamped to the target month's length."""
    idx = value.month - 1 + months
    year = value.year + idx // 12
    month = idx % 12 + 1
    day = min(value.day, last_day_of_month(year, month))
    return value.replace(year=year, month=month, day=day)
