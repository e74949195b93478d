from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def coerce_utc(value: datetime | None) -> datetime | None:
    # SQLite hands DateTime(timezone=True) columns back as naive values.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def epoch_millis(value_ns: int) -> int:
    return value_ns // 1_000_000
