"""Timestamp utilities for wire events.

Every timestamp crossing the bridge is ISO-8601 in UTC with millisecond
precision and a ``Z`` suffix, e.g. ``2025-02-02T15:45:00.123Z``.
"""

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def iso_timestamp(dt: datetime | None = None) -> str:
    """Format a datetime for the wire.

    Args:
        dt: Datetime to format. Defaults to now. Naive values are taken as UTC.

    Examples:
        >>> iso_timestamp(datetime(2025, 2, 2, 15, 45, tzinfo=UTC))
        '2025-02-02T15:45:00.000Z'
    """
    dt = dt or utc_now()
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")
