"""Datetime helpers for timezone handling."""
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (e.g. read back from SQLite) as UTC.

        >>> ensure_utc(datetime(2025, 1, 1, 12, 0)).tzinfo == timezone.utc
        True
        >>> ensure_utc(None) is None
        True
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def isoformat(dt: Optional[datetime]) -> Optional[str]:
    dt = ensure_utc(dt)
    return dt.isoformat() if dt else None


def seconds_until(deadline: Optional[datetime], now: Optional[datetime] = None) -> float:
    """Seconds from ``now`` until ``deadline``; negative once it has passed."""
    if deadline is None:
        return 0.0
    now = now or utcnow()
    return (ensure_utc(deadline) - ensure_utc(now)).total_seconds()
