"""
Timezone helpers.

All datetimes handled by the refresh pipeline are timezone-aware UTC. Values
read back from the database may be naive (TIMESTAMP WITHOUT TIME ZONE) and
are normalised with ensure_utc().
"""

from __future__ import annotations
from datetime import datetime, timezone
from typing import Optional


UTC = timezone.utc


def now_utc() -> datetime:
    """Get current time in UTC (timezone-aware)."""
    return datetime.now(UTC)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Make a datetime timezone-aware UTC.

    Naive datetimes are assumed to already be UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def age_seconds(dt: Optional[datetime]) -> float:
    """
    Calculate the age of a datetime in seconds.

    Returns:
        Age in seconds, or infinity when dt is None.
    """
    if dt is None:
        return float("inf")
    return (now_utc() - ensure_utc(dt)).total_seconds()


def seconds_until(dt: Optional[datetime]) -> float:
    """Seconds from now until dt (negative once dt has passed)."""
    if dt is None:
        return float("-inf")
    return (ensure_utc(dt) - now_utc()).total_seconds()
