from __future__ import annotations

from datetime import datetime, timezone

UTC = timezone.utc


def utc_now() -> datetime:
    """Return a tz-aware UTC timestamp. Default clock for every use-case."""
    return datetime.now(UTC)


def is_tz_aware(value: datetime) -> bool:
    return value.tzinfo is not None and value.utcoffset() is not None


def coerce_utc(value: datetime) -> datetime:
    """Coerce a datetime read back from storage to tz-aware UTC.

    Some drivers (SQLite) drop the offset on round-trip; naive values are
    taken to already be UTC since that is all this service ever writes.
    """
    if is_tz_aware(value):
        return value.astimezone(UTC)
    return value.replace(tzinfo=UTC)
