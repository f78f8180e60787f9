from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


UTC = timezone.utc


def utc_now() -> datetime:
    return datetime.now(UTC)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive values (SQLite drops tzinfo) and convert aware ones."""

    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_rfc3339_utc(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    value = ensure_utc(dt)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_rfc3339(s: Optional[str]) -> Optional[datetime]:
    if not s or not s.strip():
        return None
    value = s.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(value))
    except ValueError:
        return None


def to_epoch_ms(dt: Optional[datetime]) -> Optional[int]:
    """Milliseconds since the epoch, the unit the web client stamps items with."""

    if dt is None:
        return None
    return int(ensure_utc(dt).timestamp() * 1000)


def from_epoch_ms(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=UTC)


__all__ = [
    "UTC",
    "ensure_utc",
    "from_epoch_ms",
    "parse_rfc3339",
    "to_epoch_ms",
    "to_rfc3339_utc",
    "utc_now",
]
