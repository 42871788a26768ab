from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime, time
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .clock import minutes_of_day, parse_time, to_local
from .db import SessionLocal, _is_postgres
from .models import DeliveryTarget, ReminderSettings

DEFAULT_OFFSETS = [15, 30, 60]
MAX_OFFSET_MINUTES = 24 * 60
_TIME_FIELDS = {"daily_summary_time", "quiet_hours_start", "quiet_hours_end"}


@dataclass(frozen=True)
class SettingsUpdate:
    reminder_before_minutes: Optional[list[int]] = None
    daily_summary_time: Optional[time] = None
    enable_task_start_reminder: Optional[bool] = None
    enable_task_due_reminder: Optional[bool] = None
    enable_daily_summary: Optional[bool] = None
    enable_routine_generation_notice: Optional[bool] = None
    notify_pending_tasks: Optional[bool] = None
    notify_overdue_tasks: Optional[bool] = None
    notify_completed_milestone: Optional[bool] = None
    quiet_hours_enabled: Optional[bool] = None
    quiet_hours_start: Optional[time] = None
    quiet_hours_end: Optional[time] = None


def normalize_offsets(values) -> list[int]:
    """Positive minute offsets, de-duplicated, order preserved."""
    out: list[int] = []
    for v in values or []:
        n = int(v)
        if n <= 0 or n > MAX_OFFSET_MINUTES:
            raise ValueError(f"reminder offset must be between 1 and {MAX_OFFSET_MINUTES} minutes")
        if n not in out:
            out.append(n)
    return out


# ──────────────────────────────────────────────────────────────────────────────
# Repository
# ──────────────────────────────────────────────────────────────────────────────

def get_settings(session: Session, user_id: int) -> Optional[ReminderSettings]:
    return session.query(ReminderSettings).filter(ReminderSettings.user_id == user_id).one_or_none()


def create_default(session: Session, user_id: int) -> ReminderSettings:
    row = ReminderSettings(
        user_id=user_id,
        reminder_before_minutes=list(DEFAULT_OFFSETS),
        daily_summary_time=time(7, 0),
        quiet_hours_enabled=False,
        quiet_hours_start=time(22, 0),
        quiet_hours_end=time(7, 0),
    )
    session.add(row)
    session.flush()
    return row


def get_or_create_settings(session: Session, user_id: int) -> ReminderSettings:
    row = get_settings(session, user_id)
    if row is not None:
        return row
    if not _is_postgres():
        return create_default(session, user_id)
    try:
        with session.begin_nested():
            return create_default(session, user_id)
    except IntegrityError:
        # a concurrent writer inserted the row first
        row = get_settings(session, user_id)
        if row is None:
            raise
        return row


def update_settings(user_id: int, changes: SettingsUpdate) -> dict:
    with SessionLocal() as s:
        row = get_or_create_settings(s, user_id)
        for f in fields(changes):
            value = getattr(changes, f.name)
            if value is None:
                continue
            if f.name == "reminder_before_minutes":
                value = normalize_offsets(value)
            elif f.name in _TIME_FIELDS:
                value = parse_time(value)
            setattr(row, f.name, value)
        s.commit()
        s.refresh(row)
        return settings_dict(row)


def load_settings(user_id: int) -> dict:
    with SessionLocal() as s:
        row = get_or_create_settings(s, user_id)
        s.commit()
        return settings_dict(row)


def has_delivery_target(session: Session, user_id: int) -> bool:
    target = active_delivery_target(session, user_id)
    return target is not None


def active_delivery_target(session: Session, user_id: int) -> Optional[DeliveryTarget]:
    return (
        session.query(DeliveryTarget)
        .filter(
            DeliveryTarget.user_id == user_id,
            DeliveryTarget.is_verified.is_(True),
            DeliveryTarget.is_active.is_(True),
        )
        .one_or_none()
    )


# ──────────────────────────────────────────────────────────────────────────────
# Quiet hours
# ──────────────────────────────────────────────────────────────────────────────

def in_quiet_hours(settings: Optional[ReminderSettings], now: datetime) -> bool:
    """
    True when `now` (naive UTC or aware) falls in the user's quiet window, evaluated
    in the app timezone. Windows with start > end wrap past midnight. Both edges inclusive.
    """
    if settings is None or not settings.quiet_hours_enabled:
        return False
    start, end = settings.quiet_hours_start, settings.quiet_hours_end
    if start is None or end is None:
        return False
    t = minutes_of_day(to_local(now).time())
    s_min, e_min = minutes_of_day(start), minutes_of_day(end)
    if s_min > e_min:
        return t >= s_min or t <= e_min
    return s_min <= t <= e_min


# ──────────────────────────────────────────────────────────────────────────────
# Serialization
# ──────────────────────────────────────────────────────────────────────────────

def _fmt(t: Optional[time]) -> Optional[str]:
    return t.strftime("%H:%M") if t else None


def settings_dict(row: ReminderSettings) -> dict:
    return {
        "user_id": row.user_id,
        "reminder_before_minutes": list(row.reminder_before_minutes or []),
        "daily_summary_time": _fmt(row.daily_summary_time),
        "enable_task_start_reminder": bool(row.enable_task_start_reminder),
        "enable_task_due_reminder": bool(row.enable_task_due_reminder),
        "enable_daily_summary": bool(row.enable_daily_summary),
        "enable_routine_generation_notice": bool(row.enable_routine_generation_notice),
        "notify_pending_tasks": bool(row.notify_pending_tasks),
        "notify_overdue_tasks": bool(row.notify_overdue_tasks),
        "notify_completed_milestone": bool(row.notify_completed_milestone),
        "quiet_hours_enabled": bool(row.quiet_hours_enabled),
        "quiet_hours_start": _fmt(row.quiet_hours_start),
        "quiet_hours_end": _fmt(row.quiet_hours_end),
    }
