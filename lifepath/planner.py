"""
Reminder planner: turns a task's start time / due date and the owner's reminder
settings into pending ScheduledReminder rows. Reactive only; called from the
task collaborator on create/update, never polled.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from .clock import local_midnight_utc, local_wall_to_utc, resolve_now
from .db import SessionLocal
from .debug_utils import debug_log
from .models import ScheduledReminder, Task
from .reminder_settings import get_or_create_settings, has_delivery_target, normalize_offsets

DUE_REMINDER_MINUTES = 24 * 60


def _existing_pending(session: Session, task_id: int, reminder_type: str) -> set[Optional[int]]:
    rows = (
        session.query(ScheduledReminder.minutes_before)
        .filter(
            ScheduledReminder.task_id == task_id,
            ScheduledReminder.reminder_type == reminder_type,
            ScheduledReminder.status == "pending",
        )
        .all()
    )
    return {r[0] for r in rows}


def task_start_utc(task: Task) -> Optional[datetime]:
    if task.due_date is None or task.time_start is None:
        return None
    return local_wall_to_utc(task.due_date, task.time_start)


def plan_for_task_start(session: Session, task: Task, now: Optional[datetime] = None) -> list[ScheduledReminder]:
    now_utc = resolve_now(now)
    start_at = task_start_utc(task)
    if start_at is None:
        return []
    settings = get_or_create_settings(session, task.user_id)
    if not settings.enable_task_start_reminder:
        return []
    if not has_delivery_target(session, task.user_id):
        debug_log("no verified delivery target; start reminders skipped", {"task_id": task.id}, tag="planner")
        return []

    already = _existing_pending(session, task.id, "task_start")
    created: list[ScheduledReminder] = []
    for minutes in normalize_offsets(settings.reminder_before_minutes):
        if minutes in already:
            continue
        fire_at = start_at - timedelta(minutes=minutes)
        if fire_at <= now_utc:
            continue
        row = ScheduledReminder(
            user_id=task.user_id,
            task_id=task.id,
            reminder_type="task_start",
            fire_at=fire_at,
            minutes_before=minutes,
            status="pending",
        )
        session.add(row)
        created.append(row)
    if created:
        session.flush()
        debug_log(
            "start reminders planned",
            {"task_id": task.id, "fire_at": [r.fire_at for r in created]},
            tag="planner",
        )
    return created


def plan_for_task_due(session: Session, task: Task, now: Optional[datetime] = None) -> Optional[ScheduledReminder]:
    """One reminder 24h before the start of the due date (app timezone)."""
    now_utc = resolve_now(now)
    if task.due_date is None:
        return None
    settings = get_or_create_settings(session, task.user_id)
    if not settings.enable_task_due_reminder:
        return None
    if not has_delivery_target(session, task.user_id):
        return None
    if DUE_REMINDER_MINUTES in _existing_pending(session, task.id, "task_due"):
        return None
    fire_at = local_midnight_utc(task.due_date) - timedelta(minutes=DUE_REMINDER_MINUTES)
    if fire_at <= now_utc:
        return None
    row = ScheduledReminder(
        user_id=task.user_id,
        task_id=task.id,
        reminder_type="task_due",
        fire_at=fire_at,
        minutes_before=DUE_REMINDER_MINUTES,
        status="pending",
    )
    session.add(row)
    session.flush()
    return row


def plan_for_task(session: Session, task: Task, now: Optional[datetime] = None) -> list[ScheduledReminder]:
    if task.status == "done":
        return []
    planned = plan_for_task_start(session, task, now=now)
    due = plan_for_task_due(session, task, now=now)
    if due is not None:
        planned.append(due)
    return planned


def discard_for_task(session: Session, task_id: int) -> int:
    """Delete pending reminders only; sent/failed rows are history."""
    return (
        session.query(ScheduledReminder)
        .filter(ScheduledReminder.task_id == task_id, ScheduledReminder.status == "pending")
        .delete(synchronize_session=False)
    )


def replan_for_task(session: Session, task: Task, now: Optional[datetime] = None) -> list[ScheduledReminder]:
    removed = discard_for_task(session, task.id)
    planned = plan_for_task(session, task, now=now)
    print(f"[planner] task {task.id}: replaced {removed} pending reminder(s) with {len(planned)}")
    return planned


# ──────────────────────────────────────────────────────────────────────────────
# Reads
# ──────────────────────────────────────────────────────────────────────────────

def reminder_dict(r: ScheduledReminder) -> dict:
    return {
        "id": r.id,
        "user_id": r.user_id,
        "task_id": r.task_id,
        "reminder_type": r.reminder_type,
        "fire_at": r.fire_at,
        "minutes_before": r.minutes_before,
        "status": r.status,
        "attempts": r.attempts,
        "next_attempt_at": r.next_attempt_at,
        "last_error": r.last_error,
        "sent_at": r.sent_at,
    }


def pending_reminders(user_id: int, limit: int = 50) -> list[dict]:
    with SessionLocal() as s:
        rows = (
            s.query(ScheduledReminder)
            .filter(ScheduledReminder.user_id == user_id, ScheduledReminder.status == "pending")
            .order_by(ScheduledReminder.fire_at.asc())
            .limit(limit)
            .all()
        )
        return [reminder_dict(r) for r in rows]
