from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from .config import DEFAULT_TZ

# All persisted timestamps are naive UTC. Wall-clock values (task start times,
# quiet hours, summary time) are interpreted in DEFAULT_TZ, never the host zone.


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(dt: datetime) -> datetime:
    """Naive input is taken to be UTC already; aware input is converted."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def to_local(dt: datetime) -> datetime:
    """Aware datetime in DEFAULT_TZ for a naive-UTC or aware input."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(DEFAULT_TZ)


def resolve_now(now: Optional[datetime] = None) -> datetime:
    return to_utc_naive(now) if now is not None else utcnow()


def local_today(now: Optional[datetime] = None) -> date:
    return to_local(resolve_now(now)).date()


def local_wall_to_utc(day: date, at: time) -> datetime:
    """Combine a calendar day and a time of day in DEFAULT_TZ, returned as naive UTC."""
    local_dt = datetime.combine(day, at).replace(tzinfo=DEFAULT_TZ)
    return to_utc_naive(local_dt)


def local_midnight_utc(day: date) -> datetime:
    return local_wall_to_utc(day, time(0, 0))


def minutes_of_day(t: time) -> int:
    return t.hour * 60 + t.minute


def parse_time(value: object) -> Optional[time]:
    """Accepts time objects or 'HH:MM' / 'HH:MM:SS' strings."""
    if value is None:
        return None
    if isinstance(value, time):
        return value
    raw = str(value).strip()
    if not raw:
        return None
    parts = raw.split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"invalid time of day: {value!r}")
    hh, mm = int(parts[0]), int(parts[1])
    ss = int(parts[2]) if len(parts) == 3 else 0
    return time(hh, mm, ss)


def parse_date(value: object) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value).strip()
    if not raw:
        return None
    return date.fromisoformat(raw[:10])


def days_ago(days: int, now: Optional[datetime] = None) -> datetime:
    return resolve_now(now) - timedelta(days=days)
