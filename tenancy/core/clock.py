from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    # Keep every TTL and window comparison in UTC.
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # Some drivers (sqlite) hand back naive timestamps; they are stored as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
