"""
Timezone-aware datetime helpers.

Stores take a ``clock`` callable (defaulting to ``utc_now``) so expiry can be
tested deterministically.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Get current UTC datetime with timezone awareness."""
    return datetime.now(timezone.utc)


def ensure_timezone_aware(dt: datetime, default_tz: Optional[timezone] = None) -> datetime:
    """
    Ensure datetime is timezone-aware.

    Naive values (e.g. read back from a client without ``tz_aware``) are taken as UTC.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=default_tz or timezone.utc)
    return dt


def is_expired(expires_at: datetime, now: datetime) -> bool:
    """True once ``now`` has reached ``expires_at``."""
    return ensure_timezone_aware(now) >= ensure_timezone_aware(expires_at)


def days_ago(days: int, now: Optional[datetime] = None) -> datetime:
    return (now or utc_now()) - timedelta(days=days)
