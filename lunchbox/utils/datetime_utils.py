from datetime import datetime, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def utc_now() -> datetime:
    """
    Get current UTC datetime as a timezone-aware datetime.

    Returns:
        datetime: Current UTC datetime with timezone info
    """
    return datetime.now(timezone.utc)


def naive_utc_now() -> datetime:
    """
    Get current UTC datetime as a naive datetime (no timezone info).
    Reminder timestamps are stored naive in UTC.

    Returns:
        datetime: Current UTC datetime without timezone info
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc(dt: datetime) -> datetime:
    """
    Convert a datetime object to UTC timezone-aware datetime.

    Args:
        dt: Datetime object to convert

    Returns:
        datetime: UTC timezone-aware datetime
    """
    if dt.tzinfo is None:
        # Assume naive datetime is in UTC
        return dt.replace(tzinfo=timezone.utc)
    else:
        # Convert to UTC
        return dt.astimezone(timezone.utc)


def to_naive_utc(dt: datetime) -> datetime:
    """
    Convert a datetime object to naive UTC (no timezone info).

    Args:
        dt: Datetime object to convert

    Returns:
        datetime: Naive UTC datetime
    """
    if dt.tzinfo is None:
        # Already naive, assume it's UTC
        return dt
    else:
        # Convert to UTC and remove timezone info
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.replace(tzinfo=None)


def local_timezone() -> tzinfo:
    """Timezone of the server process."""
    return datetime.now().astimezone().tzinfo or timezone.utc


def resolve_timezone(name: Optional[str], default: Optional[str] = None) -> tzinfo:
    """
    Resolve an IANA timezone name, falling back to ``default`` and then to the
    server's local timezone.

    Raises:
        ValueError: if ``name`` is given but is not a known timezone
    """
    for candidate in (name, default):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            if candidate is name:
                raise ValueError(f"Unknown timezone: {candidate}")
    return local_timezone()


def format_local_datetime(
    dt: Optional[datetime], zone: tzinfo, fmt: str = "%a %d %b %Y, %H:%M"
) -> str:
    """Format a (naive UTC or aware) datetime in the given timezone."""
    if dt is None:
        return "N/A"
    return to_utc(dt).astimezone(zone).strftime(fmt)
