"""Timestamp and identifier helpers."""

from __future__ import annotations

import random
import time
from datetime import UTC, datetime, timedelta


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def as_utc(dt: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def seconds_since(dt: datetime, now: datetime | None = None) -> float:
    """Elapsed seconds between *dt* and *now* (default: current time)."""
    now = now or utc_now()
    return (now - as_utc(dt)).total_seconds()  # type: ignore[operator]


def after(seconds: float, now: datetime | None = None) -> datetime:
    """Datetime *seconds* from *now*."""
    return (now or utc_now()) + timedelta(seconds=seconds)


def generate_ulid() -> str:
    """
    Generate a ULID-like identifier.

    Format: 26 characters, Crockford base32, time-sortable.
    """
    timestamp_ms = int(time.time() * 1000)
    timestamp_chars = _encode_base32(timestamp_ms, 10)
    random_part = "".join(random.choices(_ENCODING, k=16))
    return timestamp_chars + random_part


_ENCODING = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
_ENCODING_LEN = len(_ENCODING)


def _encode_base32(value: int, length: int) -> str:
    """Encode integer to base32 string of fixed length."""
    result = []
    for _ in range(length):
        result.append(_ENCODING[value % _ENCODING_LEN])
        value //= _ENCODING_LEN
    return "".join(reversed(result))
