"""
Time Utilities

Venue payloads carry timestamps as millisecond strings ("1704110400000"),
signatures need ISO-8601 strings with millisecond precision and a "Z"
suffix, and the login handshake wants Unix seconds. Everything inside the
core uses timezone-aware UTC datetimes; these helpers convert at the edges.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Union

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
"""Zero instant, used for "never updated" and for perpetual expiry"""


def to_utc_datetime(timestamp: Union[int, float]) -> datetime:
    """
    Convert a timestamp (seconds or milliseconds) to UTC datetime.

    Detection Logic:
        - If timestamp > 1e12: assumed to be milliseconds
        - Otherwise: assumed to be seconds

    Raises:
        ValueError: If timestamp is negative or invalid

    Examples:
        >>> to_utc_datetime(1704110400000)
        datetime.datetime(2024, 1, 1, 12, 0, tzinfo=datetime.timezone.utc)
    """
    if timestamp < 0:
        raise ValueError(f"Timestamp cannot be negative: {timestamp}")

    if timestamp > 1e12:
        timestamp = timestamp / 1000.0

    try:
        return datetime.fromtimestamp(timestamp, tz=timezone.utc)
    except (OSError, OverflowError, ValueError) as e:
        raise ValueError(f"Invalid timestamp: {timestamp}. Error: {e}")


def parse_ms(value: Optional[Union[str, int]]) -> datetime:
    """
    Parse a venue millisecond timestamp.

    Empty strings and None (OKX sends "" for unset times such as the
    expiry of a perpetual) map to EPOCH.

    Examples:
        >>> parse_ms("1704110400123")
        datetime.datetime(2024, 1, 1, 12, 0, 0, 123000, tzinfo=datetime.timezone.utc)
        >>> parse_ms("")
        datetime.datetime(1970, 1, 1, 0, 0, tzinfo=datetime.timezone.utc)
    """
    if value is None or value == "" or value == "0" or value == 0:
        return EPOCH
    return EPOCH + timedelta(milliseconds=int(value))


def datetime_to_timestamp(dt: datetime, milliseconds: bool = False) -> int:
    """
    Convert a datetime object to Unix timestamp.

    Naive datetimes are treated as UTC.

    Examples:
        >>> dt = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        >>> datetime_to_timestamp(dt, milliseconds=True)
        1704110400000
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)

    if milliseconds:
        return (dt - EPOCH) // timedelta(milliseconds=1)
    return (dt - EPOCH) // timedelta(seconds=1)


def to_iso8601_ms(dt: datetime) -> str:
    """
    Format a datetime as ISO-8601 with millisecond precision and "Z".

    Example:
        >>> to_iso8601_ms(datetime(2024, 1, 1, 12, 0, 0, 123456, tzinfo=timezone.utc))
        '2024-01-01T12:00:00.123Z'
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def current_utc_datetime() -> datetime:
    """Current time as timezone-aware datetime in UTC"""
    return datetime.now(timezone.utc)


def current_utc_timestamp(milliseconds: bool = False) -> int:
    """Current Unix timestamp in seconds or milliseconds"""
    return datetime_to_timestamp(datetime.now(timezone.utc), milliseconds)
