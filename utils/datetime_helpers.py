"""
Datetime helper utilities to ensure consistent timezone handling across the application.

All settlement timestamps are UTC. Some database drivers (SQLite) hand back
naive datetimes even for timezone-aware columns, so values read from storage
go through ``as_utc`` before they are compared with ``utc_now()``.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to aware UTC.

    Naive values are assumed to already be UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def days_from(start: datetime, days: int) -> datetime:
    return start + timedelta(days=days)


def is_past(deadline: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """True once ``deadline`` has been reached"""
    if deadline is None:
        return False
    return as_utc(deadline) <= (now or utc_now())
