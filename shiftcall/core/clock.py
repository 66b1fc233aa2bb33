from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable


TimeProvider = Callable[[], datetime]


def utc_now() -> datetime:
    # Keep scheduling and ledger bookkeeping in UTC for deterministic comparisons.
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on round trips; treat naive values as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
