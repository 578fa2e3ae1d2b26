"""Timestamp helpers.

All timestamps are stored as naive UTC datetimes so SQLite and PostgreSQL
compare them the same way.
"""
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

EPOCH = datetime(1970, 1, 1)
ONE_MS = timedelta(milliseconds=1)


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def to_epoch_ms(value: datetime) -> int:
    return (to_naive_utc(value) - EPOCH) // ONE_MS


def from_epoch_ms(ms: float) -> datetime:
    return EPOCH + timedelta(milliseconds=ms)


def parse_timestamp(value: Any, default: Optional[datetime] = None) -> datetime:
    """
    Parse an event timestamp.

    Accepts a datetime, an ISO 8601 string (``Z`` suffix allowed) or a
    number of milliseconds since the epoch. Missing values return ``default``.

    Raises:
        ValueError: If the value cannot be turned into a valid instant
    """
    if value is None or value == "":
        if default is None:
            raise ValueError("timestamp is required")
        return default

    if isinstance(value, datetime):
        return to_naive_utc(value)

    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")

    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise ValueError(f"Invalid timestamp: {value!r}")
        try:
            return from_epoch_ms(value)
        except OverflowError as exc:
            raise ValueError(f"Invalid timestamp: {value!r}") from exc

    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return to_naive_utc(datetime.fromisoformat(text))

    raise ValueError(f"Invalid timestamp: {value!r}")


def floor_to_bucket(value: datetime, bucket_ms: int) -> datetime:
    """Start of the fixed-width bucket containing ``value``."""
    if bucket_ms <= 0:
        raise ValueError("bucket_ms must be positive")
    return from_epoch_ms(to_epoch_ms(value) // bucket_ms * bucket_ms)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """ISO 8601 string with a ``Z`` suffix, or None."""
    if value is None:
        return None
    return to_naive_utc(value).isoformat(timespec="milliseconds") + "Z"
