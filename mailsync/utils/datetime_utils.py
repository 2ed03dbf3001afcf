"""
Datetime utility functions for consistent timezone handling.

All helpers return timezone-aware datetimes in UTC. Values read back from
SQLite come out naive; ``to_utc`` treats those as UTC.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def to_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert a datetime to UTC.

    Args:
        dt: Datetime to convert. Naive values are assumed to already be UTC.

    Returns:
        Timezone-aware datetime in UTC, or None if dt is None.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utc_from_timestamp_ms(value) -> Optional[datetime]:
    """Convert an epoch-milliseconds value (int or numeric string) to an aware UTC datetime."""
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 string (including a trailing ``Z``) to an aware UTC datetime."""
    if not value:
        return None
    try:
        return to_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def seconds_until(deadline: Optional[datetime]) -> Optional[float]:
    """Seconds remaining until deadline (negative once passed), or None without a deadline."""
    if deadline is None:
        return None
    return (to_utc(deadline) - utc_now()).total_seconds()
