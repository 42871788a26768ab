from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import date, datetime, time
from typing import Optional

from sqlalchemy.orm import Session

from .clock import parse_date, parse_time
from .errors import TaskNotFound
from .models import GeneratedTaskRecord, ScheduledReminder, Task, TASK_PRIORITIES, TASK_STATUSES
from .planner import discard_for_task, plan_for_task, replan_for_task

# Editing any of these re-plans pending reminders.
_SCHEDULE_FIELDS = {"due_date", "time_start"}


@dataclass(frozen=True)
class TaskFields:
    title: str
    description: Optional[str] = None
    status: str = "pending"
    priority: str = "medium"
    category: Optional[str] = None
    due_date: Optional[date] = None
    time_start: Optional[time] = None
    time_end: Optional[time] = None


@dataclass(frozen=True)
class TaskUpdate:
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    category: Optional[str] = None
    due_date: Optional[date] = None
    time_start: Optional[time] = None
    time_end: Optional[time] = None


def _validate(status: Optional[str], priority: Optional[str]) -> None:
    if status is not None and status not in TASK_STATUSES:
        raise ValueError(f"status must be one of {TASK_STATUSES}")
    if priority is not None and priority not in TASK_PRIORITIES:
        raise ValueError(f"priority must be one of {TASK_PRIORITIES}")


def get_task(session: Session, task_id: int, user_id: int) -> Task:
    task = session.query(Task).filter(Task.id == task_id, Task.user_id == user_id).one_or_none()
    if task is None:
        raise TaskNotFound(task_id)
    return task


def create_task(session: Session, user_id: int, data: TaskFields, now: Optional[datetime] = None) -> Task:
    """Insert a task and plan its reminders in the same unit of work (caller commits)."""
    title = (data.title or "").strip()
    if not title:
        raise ValueError("task title required")
    _validate(data.status, data.priority)
    task = Task(
        user_id=user_id,
        title=title,
        description=data.description,
        status=data.status,
        priority=data.priority,
        category=data.category,
        due_date=parse_date(data.due_date),
        time_start=parse_time(data.time_start),
        time_end=parse_time(data.time_end),
    )
    session.add(task)
    session.flush()
    plan_for_task(session, task, now=now)
    return task


def update_task(session: Session, task_id: int, user_id: int, changes: TaskUpdate, now: Optional[datetime] = None) -> Task:
    task = get_task(session, task_id, user_id)
    _validate(changes.status, changes.priority)
    was_done = task.status == "done"
    changed = set()
    for f in fields(changes):
        value = getattr(changes, f.name)
        if value is None:
            continue
        if f.name == "due_date":
            value = parse_date(value)
        elif f.name in ("time_start", "time_end"):
            value = parse_time(value)
        if getattr(task, f.name) != value:
            setattr(task, f.name, value)
            changed.add(f.name)
    session.flush()

    if "status" in changed and task.status == "done":
        discard_for_task(session, task.id)
    elif task.status != "done" and (was_done or changed & _SCHEDULE_FIELDS):
        replan_for_task(session, task, now=now)
    return task


def complete_task(session: Session, task_id: int, user_id: int) -> Task:
    return update_task(session, task_id, user_id, TaskUpdate(status="done"))


def delete_task(session: Session, task_id: int, user_id: int) -> Task:
    """Remove a task with its scheduled reminders and generation links."""
    task = get_task(session, task_id, user_id)
    session.query(ScheduledReminder).filter(ScheduledReminder.task_id == task.id).delete(synchronize_session=False)
    session.query(GeneratedTaskRecord).filter(GeneratedTaskRecord.task_id == task.id).delete(synchronize_session=False)
    session.delete(task)
    session.flush()
    return task


def task_dict(t: Task) -> dict:
    return {
        "id": t.id,
        "user_id": t.user_id,
        "title": t.title,
        "description": t.description,
        "status": t.status,
        "priority": t.priority,
        "category": t.category,
        "due_date": t.due_date,
        "time_start": t.time_start.strftime("%H:%M") if t.time_start else None,
        "time_end": t.time_end.strftime("%H:%M") if t.time_end else None,
    }
