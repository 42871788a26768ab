"""
Routine template store: templates, their ordered task definitions and the
active-template queries the generation engine fans out over.
"""
from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import time
from typing import Any, Iterable, Optional

from sqlalchemy import exists, func
from sqlalchemy.orm import Session

from .clock import parse_time
from .errors import TemplateInUse, TemplateNotFound
from .models import (
    DailyRoutineGeneration,
    GeneratedTaskRecord,
    RoutineTemplate,
    TASK_PRIORITIES,
    TemplateTask,
)


# ──────────────────────────────────────────────────────────────────────────────
# Editable field sets (None = leave unchanged)
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TemplateUpdate:
    name: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None


@dataclass(frozen=True)
class TemplateTaskFields:
    title: str
    description: Optional[str] = None
    category: Optional[str] = None
    priority: str = "medium"
    time_start: Optional[time] = None
    time_end: Optional[time] = None
    estimated_duration: Optional[int] = None
    order_index: Optional[int] = None
    is_active: bool = True


@dataclass(frozen=True)
class TemplateTaskUpdate:
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    priority: Optional[str] = None
    time_start: Optional[time] = None
    time_end: Optional[time] = None
    estimated_duration: Optional[int] = None
    order_index: Optional[int] = None
    is_active: Optional[bool] = None


def _apply(row: Any, changes: Any) -> list[str]:
    changed = []
    for f in fields(changes):
        value = getattr(changes, f.name)
        if value is None:
            continue
        if getattr(row, f.name) != value:
            setattr(row, f.name, value)
            changed.append(f.name)
    return changed


def _check_priority(priority: Optional[str]) -> None:
    if priority is not None and priority not in TASK_PRIORITIES:
        raise ValueError(f"priority must be one of {TASK_PRIORITIES}")


# ──────────────────────────────────────────────────────────────────────────────
# Reads
# ──────────────────────────────────────────────────────────────────────────────

def _has_active_tasks():
    return exists().where(TemplateTask.template_id == RoutineTemplate.id, TemplateTask.is_active.is_(True))


def get_template(session: Session, template_id: int, user_id: int) -> RoutineTemplate:
    tpl = (
        session.query(RoutineTemplate)
        .filter(RoutineTemplate.id == template_id, RoutineTemplate.user_id == user_id)
        .one_or_none()
    )
    if tpl is None:
        raise TemplateNotFound(template_id)
    return tpl


def get_template_with_tasks(session: Session, template_id: int, user_id: int) -> tuple[RoutineTemplate, list[TemplateTask]]:
    """Template plus every task definition (active or not) in order_index order."""
    tpl = get_template(session, template_id, user_id)
    tasks = (
        session.query(TemplateTask)
        .filter(TemplateTask.template_id == tpl.id)
        .order_by(TemplateTask.order_index.asc(), TemplateTask.id.asc())
        .all()
    )
    return tpl, tasks


def active_template_tasks(session: Session, template_id: int) -> list[TemplateTask]:
    return (
        session.query(TemplateTask)
        .filter(TemplateTask.template_id == template_id, TemplateTask.is_active.is_(True))
        .order_by(TemplateTask.order_index.asc(), TemplateTask.id.asc())
        .all()
    )


def list_templates(session: Session, user_id: int, include_inactive: bool = True) -> list[RoutineTemplate]:
    q = session.query(RoutineTemplate).filter(RoutineTemplate.user_id == user_id)
    if not include_inactive:
        q = q.filter(RoutineTemplate.is_active.is_(True))
    return q.order_by(RoutineTemplate.created_at.asc(), RoutineTemplate.id.asc()).all()


def list_active_templates(session: Session, user_id: int) -> list[RoutineTemplate]:
    """Active templates that have at least one active task, oldest first."""
    has_tasks = _has_active_tasks()
    return (
        session.query(RoutineTemplate)
        .filter(RoutineTemplate.user_id == user_id, RoutineTemplate.is_active.is_(True), has_tasks)
        .order_by(RoutineTemplate.created_at.asc(), RoutineTemplate.id.asc())
        .all()
    )


def users_with_active_templates(session: Session) -> list[int]:
    has_tasks = _has_active_tasks()
    rows = (
        session.query(RoutineTemplate.user_id)
        .filter(RoutineTemplate.is_active.is_(True), has_tasks)
        .distinct()
        .order_by(RoutineTemplate.user_id.asc())
        .all()
    )
    return [r[0] for r in rows]


# ──────────────────────────────────────────────────────────────────────────────
# Writes (caller commits)
# ──────────────────────────────────────────────────────────────────────────────

def create_template(
    session: Session,
    user_id: int,
    name: str,
    description: Optional[str] = None,
    tasks: Iterable[TemplateTaskFields] = (),
) -> RoutineTemplate:
    name = (name or "").strip()
    if not name:
        raise ValueError("template name required")
    tpl = RoutineTemplate(user_id=user_id, name=name, description=description, is_active=True)
    session.add(tpl)
    session.flush()
    task_list = list(tasks)
    if task_list:
        add_template_tasks(session, tpl, task_list)
    return tpl


def update_template(session: Session, template_id: int, user_id: int, changes: TemplateUpdate) -> RoutineTemplate:
    tpl = get_template(session, template_id, user_id)
    if changes.name is not None and not changes.name.strip():
        raise ValueError("template name cannot be blank")
    _apply(tpl, changes)
    session.flush()
    return tpl


def activate_template(session: Session, template_id: int, user_id: int) -> RoutineTemplate:
    return update_template(session, template_id, user_id, TemplateUpdate(is_active=True))


def deactivate_template(session: Session, template_id: int, user_id: int) -> RoutineTemplate:
    return update_template(session, template_id, user_id, TemplateUpdate(is_active=False))


def delete_template(session: Session, template_id: int, user_id: int) -> None:
    tpl = get_template(session, template_id, user_id)
    referenced = (
        session.query(DailyRoutineGeneration.id)
        .filter(DailyRoutineGeneration.template_id == tpl.id)
        .first()
    )
    if referenced:
        raise TemplateInUse(tpl.id)
    session.delete(tpl)
    session.flush()


def _next_order_index(session: Session, template_id: int) -> int:
    current = (
        session.query(func.max(TemplateTask.order_index))
        .filter(TemplateTask.template_id == template_id)
        .scalar()
    )
    return 0 if current is None else int(current) + 1


def add_template_task(session: Session, template: RoutineTemplate, task: TemplateTaskFields) -> TemplateTask:
    return add_template_tasks(session, template, [task])[0]


def add_template_tasks(session: Session, template: RoutineTemplate, tasks: Iterable[TemplateTaskFields]) -> list[TemplateTask]:
    created: list[TemplateTask] = []
    next_idx = _next_order_index(session, template.id)
    for spec in tasks:
        title = (spec.title or "").strip()
        if not title:
            raise ValueError("template task title required")
        _check_priority(spec.priority)
        order_index = spec.order_index if spec.order_index is not None else next_idx
        next_idx = max(next_idx, order_index + 1)
        row = TemplateTask(
            template_id=template.id,
            title=title,
            description=spec.description,
            category=spec.category,
            priority=spec.priority,
            time_start=parse_time(spec.time_start),
            time_end=parse_time(spec.time_end),
            estimated_duration=spec.estimated_duration,
            order_index=order_index,
            is_active=spec.is_active,
        )
        session.add(row)
        created.append(row)
    session.flush()
    return created


def _get_template_task(session: Session, template_task_id: int, user_id: int) -> TemplateTask:
    row = (
        session.query(TemplateTask)
        .join(RoutineTemplate, RoutineTemplate.id == TemplateTask.template_id)
        .filter(TemplateTask.id == template_task_id, RoutineTemplate.user_id == user_id)
        .one_or_none()
    )
    if row is None:
        raise LookupError(f"Template task {template_task_id} not found")
    return row


def update_template_task(session: Session, template_task_id: int, user_id: int, changes: TemplateTaskUpdate) -> TemplateTask:
    row = _get_template_task(session, template_task_id, user_id)
    _check_priority(changes.priority)
    _apply(row, changes)
    session.flush()
    return row


def delete_template_task(session: Session, template_task_id: int, user_id: int) -> None:
    row = _get_template_task(session, template_task_id, user_id)
    (
        session.query(GeneratedTaskRecord)
        .filter(GeneratedTaskRecord.template_task_id == row.id)
        .update({GeneratedTaskRecord.template_task_id: None}, synchronize_session=False)
    )
    session.delete(row)
    session.flush()


# ──────────────────────────────────────────────────────────────────────────────
# Serialization
# ──────────────────────────────────────────────────────────────────────────────

def _fmt_time(t: Optional[time]) -> Optional[str]:
    return t.strftime("%H:%M") if t else None


def template_task_dict(t: TemplateTask) -> dict:
    return {
        "id": t.id,
        "template_id": t.template_id,
        "title": t.title,
        "description": t.description,
        "category": t.category,
        "priority": t.priority,
        "time_start": _fmt_time(t.time_start),
        "time_end": _fmt_time(t.time_end),
        "estimated_duration": t.estimated_duration,
        "order_index": t.order_index,
        "is_active": bool(t.is_active),
    }


def template_dict(tpl: RoutineTemplate, tasks: Optional[list[TemplateTask]] = None) -> dict:
    out = {
        "id": tpl.id,
        "user_id": tpl.user_id,
        "name": tpl.name,
        "description": tpl.description,
        "is_active": bool(tpl.is_active),
        "created_at": tpl.created_at,
    }
    if tasks is not None:
        out["tasks"] = [template_task_dict(t) for t in tasks]
    return out
