"""
Timezone-aware datetime helpers.

Every deadline in the engine (request expiry, challenge TTL, resend
cooldown) is compared through these functions so that naive timestamps
coming back from the database never mix with aware ones.
"""
from datetime import datetime, timezone
from typing import Optional, Union


def utc_now() -> datetime:
    """Current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def parse_db_timestamp(value: Optional[Union[str, datetime]]) -> Optional[datetime]:
    """
    Parse a timestamp coming from storage into an aware UTC datetime.

    Accepts ISO strings (with ``Z`` or an explicit offset) and datetimes.
    Naive values are assumed to be UTC. Returns None for empty or
    unparseable input.
    """
    if value is None:
        return None

    if isinstance(value, str):
        if not value:
            return None
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    elif isinstance(value, datetime):
        dt = value
    else:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_db_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialize an aware datetime for storage."""
    if value is None:
        return None
    return parse_db_timestamp(value).isoformat()


def is_past(deadline: Optional[Union[str, datetime]], now: Optional[datetime] = None) -> bool:
    """
    True once ``now >= deadline``.

    A missing or unreadable deadline counts as past, so callers fail closed.
    """
    dt = parse_db_timestamp(deadline)
    if dt is None:
        return True
    return (now or utc_now()) >= dt


def seconds_until(deadline: Optional[Union[str, datetime]], now: Optional[datetime] = None) -> int:
    """Whole seconds remaining until ``deadline``, never negative."""
    dt = parse_db_timestamp(deadline)
    if dt is None:
        return 0
    remaining = (dt - (now or utc_now())).total_seconds()
    return max(0, int(remaining))


def seconds_since(
    timestamp: Optional[Union[str, datetime]],
    now: Optional[datetime] = None,
) -> Optional[float]:
    """Seconds elapsed since ``timestamp``, or None if it cannot be parsed."""
    dt = parse_db_timestamp(timestamp)
    if dt is None:
        return None
    return ((now or utc_now()) - dt).total_seconds()


def is_within_window(
    timestamp: Optional[Union[str, datetime]],
    window_seconds: int,
    now: Optional[datetime] = None,
) -> bool:
    """True if ``timestamp`` lies within the last ``window_seconds``."""
    elapsed = seconds_since(timestamp, now)
    if elapsed is None:
        return False
    return elapsed <= window_seconds
