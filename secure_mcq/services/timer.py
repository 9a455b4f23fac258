"""
Deadline authority. Every timing decision is re-derived here from stored absolute
timestamps; client-reported durations are never consulted.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # some backends (SQLite) hand back naive datetimes; everything is stored as UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def compute_expiry(started_at: datetime, duration_minutes: int, window_end: Optional[datetime]) -> datetime:
    """Effective deadline: personal duration from start, capped by the assessment window close."""
    personal_end = as_utc(started_at) + timedelta(minutes=duration_minutes)
    window_end = as_utc(window_end)
    if window_end is not None and window_end < personal_end:
        return window_end
    return personal_end


def remaining_ms(expires_at: datetime, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    return max(0, int((as_utc(expires_at) - now).total_seconds() * 1000))


def window_remaining_ms(window_end: Optional[datetime], now: Optional[datetime] = None) -> Optional[int]:
    if window_end is None:
        return None
    return remaining_ms(window_end, now)


def is_expired(expires_at: datetime, now: Optional[datetime] = None) -> bool:
    return remaining_ms(expires_at, now) <= 0


def elapsed_ms(started_at: datetime, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    return max(0, int((now - as_utc(started_at)).total_seconds() * 1000))


def isoformat(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None
