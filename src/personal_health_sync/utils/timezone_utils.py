"""
Timezone and timestamp utilities.

Sync metadata is stored as epoch milliseconds; these helpers convert it
for display in a user's timezone.
"""

import time
from datetime import datetime

import pytz


def now_millis() -> int:
    """Current time as milliseconds since the epoch."""
    return time.time_ns() // 1_000_000


def is_valid_timezone(timezone_str: str) -> bool:
    """Whether pytz knows the timezone name."""
    try:
        pytz.timezone(timezone_str)
    except pytz.UnknownTimeZoneError:
        return False
    return True


def millis_to_datetime(millis: int, timezone_str: str = "UTC") -> datetime:
    """
    Convert epoch milliseconds to a timezone-aware datetime.

    Args:
        millis: Milliseconds since the epoch.
        timezone_str: Timezone string (e.g., "Europe/Berlin").

    Returns:
        Timezone-aware datetime object.
    """
    utc_dt = datetime.fromtimestamp(millis / 1000, tz=pytz.utc)
    return utc_dt.astimezone(pytz.timezone(timezone_str))


def format_millis(millis: int | None, timezone_str: str = "UTC") -> str:
    """
    Format epoch milliseconds for display.

    Args:
        millis: Milliseconds since the epoch, or None.
        timezone_str: Timezone to render in.

    Returns:
        ISO formatted timestamp, or "-" when no value is given.
    """
    if millis is None:
        return "-"
    return millis_to_datetime(millis, timezone_str).isoformat(timespec="seconds")
