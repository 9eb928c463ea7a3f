from __future__ import annotations

from datetime import datetime, timedelta, timezone

FIXED_BUCKET_HOURS = 8


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(dt: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything we store is UTC.
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_iso(raw: str) -> datetime:
    value = raw.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    return ensure_aware(parsed)


def to_iso(dt: datetime) -> str:
    value = ensure_aware(dt)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def to_epoch_ms(dt: datetime) -> int:
    return int(ensure_aware(dt).timestamp() * 1000)


def utc_day_start(dt: datetime) -> datetime:
    value = ensure_aware(dt)
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def utc_month_start(dt: datetime) -> datetime:
    value = ensure_aware(dt)
    return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def fixed_bucket_bounds(now: datetime, bucket_hours: int = FIXED_BUCKET_HOURS) -> tuple[datetime, datetime]:
    """Return the [start, end) bucket containing ``now``.

    A timestamp exactly on a boundary belongs to the bucket that starts there.
    """
    day_start = utc_day_start(now)
    elapsed = ensure_aware(now) - day_start
    index = int(elapsed // timedelta(hours=bucket_hours))
    start = day_start + timedelta(hours=bucket_hours * index)
    return start, start + timedelta(hours=bucket_hours)
