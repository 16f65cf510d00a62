"""
UTC helpers for cache timestamps.

Rows read back from SQLite carry naive datetimes while values built in
process are aware; everything is compared in aware UTC.
"""
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken to be UTC already; aware ones are converted."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def age_in_days(then: datetime, now: Optional[datetime] = None) -> float:
    delta = ensure_utc(now or utc_now()) - ensure_utc(then)
    return delta.total_seconds() / 86400


def is_stale(fetched_at: Optional[datetime], max_age_days: float, now: Optional[datetime] = None) -> bool:
    """True when never fetched or fetched more than ``max_age_days`` ago."""
    if fetched_at is None:
        return True
    return age_in_days(fetched_at, now) > max_age_days
