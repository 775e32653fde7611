"""Time utility functions.

Provides the shared instant parsing and formatting used across the
history merge, the store and the backup pipeline. Every stored instant
goes through format_iso() so that plain string comparison in SQL matches
chronological order.
"""

from datetime import datetime, timezone


def parse_epoch_ms(value) -> int:
    """Convert an epoch-milliseconds value to int.

    Supports multiple input types:
    - int: passed through directly
    - float: truncated (e.g., 1700000000000.0 -> 1700000000000)
    - numeric string: "1700000000000" -> 1700000000000

    Raises:
        ValueError: If the value cannot be parsed
    """
    if isinstance(value, bool):
        raise ValueError(f"Cannot parse epoch milliseconds: {value!r}")

    if isinstance(value, int):
        return value

    if isinstance(value, float):
        return int(value)

    if not value or not isinstance(value, str):
        raise ValueError(f"Cannot parse epoch milliseconds: {value!r}")

    try:
        return int(value.strip())
    except ValueError:
        pass

    try:
        return int(float(value.strip()))
    except ValueError:
        raise ValueError(f"Cannot parse epoch milliseconds: {value!r}")


def format_iso(dt: datetime) -> str:
    """Format a datetime as UTC ISO-8601 with millisecond precision.

    Naive datetimes are taken to be UTC. Output looks like
    2024-01-15T10:00:00.000Z.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime('%Y-%m-%dT%H:%M:%S.') + f"{dt.microsecond // 1000:03d}Z"


def epoch_ms_to_iso(value) -> str:
    """Convert epoch milliseconds (int or numeric string) to an ISO instant."""
    ms = parse_epoch_ms(value)
    seconds, millis = divmod(ms, 1000)
    dt = datetime.fromtimestamp(seconds, tz=timezone.utc).replace(microsecond=millis * 1000)
    return format_iso(dt)


def utc_now_iso() -> str:
    """Current instant in the stored ISO format."""
    return format_iso(datetime.now(timezone.utc))


def current_year() -> int:
    """Current calendar year in UTC."""
    return datetime.now(timezone.utc).year
