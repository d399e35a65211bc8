"""
Datetime utilities for Kinsync API services.
"""
from datetime import datetime, timezone
from typing import Optional


def make_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure datetime is timezone-aware (UTC if naive).

    Args:
        dt: A datetime object that may or may not have timezone info

    Returns:
        The same datetime with UTC timezone if it was naive,
        or the original timezone-aware datetime, or None if input was None
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    """Current time as an ISO-8601 UTC string (the storage format)."""
    return utc_now().isoformat(timespec="microseconds")


def parse_timestamp(value) -> Optional[datetime]:
    """
    Parse a stored or wire timestamp into an aware datetime.

    Accepts datetimes, ISO strings (with or without 'Z'), or None.
    Returns None for empty or unparseable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return make_aware(value)
    try:
        return make_aware(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        return None
