"""Datetime utilities for timezone-aware UTC timestamps.

Usage:
    from libs.common.datetime_utils import utc_now

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Return timezone-aware UTC datetime.

    Always use this for timestamps in the database.
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Coerce a datetime read back from storage to aware UTC.

    Backends without native timezone support (SQLite) hand back naive values
    for ``DateTime(timezone=True)`` columns; those are stored as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def whole_days_between(earlier: datetime, later: datetime) -> int:
    """Number of complete 24h periods from ``earlier`` to ``later`` (floored)."""
    seconds = (ensure_utc(later) - ensure_utc(earlier)).total_seconds()
    return int(seconds // 86400)
