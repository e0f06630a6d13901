"""
Datetime helper utilities to ensure consistent timezone handling across the application.

All tables store timezone-naive UTC datetimes.
"""

import calendar
from datetime import datetime, timezone
from typing import Optional


def get_naive_utc_now() -> datetime:
    """Current UTC time as a naive datetime"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def add_months(dt: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the end of shorter months (Jan 31 + 1 -> Feb 28/29)"""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def days_remaining(expires_at: Optional[datetime], now: Optional[datetime] = None) -> Optional[int]:
    """Whole days left before expiry (rounded up), never negative"""
    if expires_at is None:
        return None
    now = now or get_naive_utc_now()
    seconds = (expires_at - now).total_seconds()
    if seconds <= 0:
        return 0
    return int(-(-seconds // 86400))
