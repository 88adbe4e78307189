"""Quota window markers. All markers are computed in UTC; weeks start on Monday."""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(now: Optional[datetime]) -> datetime:
    current = now or utcnow()
    if current.tzinfo is None:
        raise ValueError("now must be timezone-aware")
    return current.astimezone(timezone.utc)


def day_marker(now: Optional[datetime] = None) -> str:
    return _as_utc(now).date().isoformat()


def week_marker(now: Optional[datetime] = None) -> str:
    current = _as_utc(now).date()
    return (current - timedelta(days=current.weekday())).isoformat()


def markers(now: Optional[datetime] = None) -> Tuple[str, str]:
    current = _as_utc(now)
    return day_marker(current), week_marker(current)
