"""Datetime helpers.

Timestamps are stored as naive UTC datetimes and serialized with a ``Z``
suffix on the wire.
"""

from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return current UTC time as a naive datetime."""
    return datetime.now(UTC).replace(tzinfo=None)


def isoformat_utc(value: datetime | None) -> str | None:
    """Render a stored naive-UTC timestamp as ISO 8601 with ``Z``."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(UTC).replace(tzinfo=None)
    return value.isoformat(timespec="milliseconds") + "Z"
