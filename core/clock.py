"""UTC helpers shared by services that compare stored timestamps."""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Optional

_DAY_SECONDS = 24 * 60 * 60


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive values (SQLite round-trips) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def ceil_days(delta: timedelta) -> int:
    """Whole days needed to cover ``delta``; never negative."""
    seconds = delta.total_seconds()
    if seconds <= 0:
        return 0
    return int(math.ceil(seconds / _DAY_SECONDS))
