"""Timestamp conversion helpers.

Clients send timestamps in whatever representation they hold locally
(milliseconds since epoch, ISO 8601 strings, ...). The server stores aware
UTC datetimes; the watermark is milliseconds since epoch.
"""

from __future__ import annotations

from datetime import UTC, datetime

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def now_millis() -> int:
    """Current time in milliseconds since epoch."""
    return to_millis(utcnow())


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_datetime(value: object) -> datetime:
    """Normalize a client timestamp to an aware UTC datetime.

    Args:
        value: Milliseconds since epoch, ISO 8601 string or datetime.

    Returns:
        Aware UTC datetime.

    Raises:
        ValueError: If the value cannot be interpreted as a timestamp.
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    # bool is an int subclass, never a timestamp
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=UTC)
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            return datetime.fromtimestamp(int(text) / 1000, tz=UTC)
        return ensure_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    raise ValueError(f"Invalid timestamp: {value!r}")


def to_millis(value: datetime) -> int:
    """Convert a datetime (naive means UTC) to milliseconds since epoch."""
    delta = ensure_utc(value) - EPOCH
    return delta.days * 86_400_000 + delta.seconds * 1000 + delta.microseconds // 1000


def from_millis(value: int | None) -> datetime:
    """Convert milliseconds since epoch to a datetime; None means the epoch."""
    if value is None:
        return EPOCH
    return datetime.fromtimestamp(value / 1000, tz=UTC)
