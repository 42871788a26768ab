"""
Routine generation: materializes a template into dated tasks, at most once per
(user, template, target date).

The completed-generation check is done twice (before building the batch and
again right before the generation row is written) under a per-key lock; the
partial unique index on completed rows catches the cross-process race.
"""
from __future__ import annotations

import threading
import weakref
from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .clock import local_today, parse_date
from .db import SessionLocal
from .debug_utils import debug_log
from .errors import (
    AlreadyGenerated,
    GenerationError,
    GenerationNotFound,
    PersistenceError,
    TemplateEmpty,
    TemplateInactive,
)
from .models import DailyRoutineGeneration, GeneratedTaskRecord, Task
from .tasks import TaskFields, create_task, delete_task, task_dict
from .templates import (
    active_template_tasks,
    get_template,
    list_active_templates,
    list_templates,
    template_dict,
    template_task_dict,
)

# ──────────────────────────────────────────────────────────────────────────────
# Per-key locks
# ──────────────────────────────────────────────────────────────────────────────

_KEY_LOCK_GUARD = threading.Lock()
# entries vanish once no generate() call holds the lock
_KEY_LOCKS: "weakref.WeakValueDictionary[tuple[int, int], threading.Lock]" = weakref.WeakValueDictionary()


def _lock_for_key(key: tuple[int, int]) -> threading.Lock:
    with _KEY_LOCK_GUARD:
        lock = _KEY_LOCKS.get(key)
        if lock is None:
            lock = threading.Lock()
            _KEY_LOCKS[key] = lock
        return lock


# ──────────────────────────────────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────────────────────────────────

def _target(target_date: Any, now: Optional[datetime]) -> date:
    return parse_date(target_date) or local_today(now)


def _completed_generation(session: Session, user_id: int, template_id: int, target_date: date) -> Optional[DailyRoutineGeneration]:
    return (
        session.query(DailyRoutineGeneration)
        .filter(
            DailyRoutineGeneration.user_id == user_id,
            DailyRoutineGeneration.template_id == template_id,
            DailyRoutineGeneration.target_date == target_date,
            DailyRoutineGeneration.status == "completed",
        )
        .first()
    )


def _generated_records(session: Session, user_id: int, template_id: Optional[int], target_date: date):
    q = (
        session.query(GeneratedTaskRecord, Task)
        .join(Task, Task.id == GeneratedTaskRecord.task_id)
        .filter(Task.user_id == user_id, GeneratedTaskRecord.target_date == target_date)
    )
    if template_id is not None:
        q = q.filter(GeneratedTaskRecord.template_id == template_id)
    return q.order_by(Task.time_start.asc(), Task.id.asc()).all()


def generation_dict(g: DailyRoutineGeneration) -> dict:
    return {
        "id": g.id,
        "user_id": g.user_id,
        "template_id": g.template_id,
        "target_date": g.target_date,
        "tasks_generated": g.tasks_generated,
        "status": g.status,
        "error": g.error,
        "created_at": g.created_at,
    }


def _record_failure(user_id: int, template_id: int, target_date: date, partial: int, error: str) -> None:
    try:
        with SessionLocal() as s:
            s.add(DailyRoutineGeneration(
                user_id=user_id,
                template_id=template_id,
                target_date=target_date,
                tasks_generated=0,
                status="failed",
                error=f"rolled back after {partial} task(s): {error}"[:2000],
            ))
            s.commit()
    except Exception as e:
        print(f"[generation] could not record failed generation for template {template_id}: {e!r}")


# ──────────────────────────────────────────────────────────────────────────────
# Generate
# ──────────────────────────────────────────────────────────────────────────────

def generate(
    user_id: int,
    template_id: int,
    target_date: Any = None,
    *,
    now: Optional[datetime] = None,
    notify: bool = False,
    channel=None,
) -> dict:
    """
    Create today's (or `target_date`'s) tasks from one template.

    Raises AlreadyGenerated, TemplateNotFound, TemplateInactive, TemplateEmpty;
    PersistenceError when the batch fails part-way (nothing from the batch is kept,
    a failed generation row records how far it got).
    """
    day = _target(target_date, now)
    with _lock_for_key((user_id, template_id)):
        result = _generate_locked(user_id, template_id, day, now)

    if notify and result["tasks_generated"]:
        from .dispatcher import notify_routine_generation
        notify_routine_generation(
            user_id,
            result["template"]["name"],
            [t["id"] for t in result["tasks"]],
            day,
            channel=channel,
            now=now,
        )
    return result


def _generate_locked(user_id: int, template_id: int, day: date, now: Optional[datetime]) -> dict:
    created = 0
    with SessionLocal() as s:
        existing = _completed_generation(s, user_id, template_id, day)
        if existing is not None:
            raise AlreadyGenerated(template_id, day, existing.id)

        tpl = get_template(s, template_id, user_id)
        if not tpl.is_active:
            raise TemplateInactive(template_id)
        definitions = active_template_tasks(s, tpl.id)
        if not definitions:
            raise TemplateEmpty(template_id)

        try:
            pairs = []
            for d in definitions:
                task = create_task(
                    s,
                    user_id,
                    TaskFields(
                        title=d.title,
                        description=d.description,
                        status="pending",
                        priority=d.priority or "medium",
                        category=d.category,
                        due_date=day,
                        time_start=d.time_start,
                        time_end=d.time_end,
                    ),
                    now=now,
                )
                pairs.append((d, task))
                created += 1

            if _completed_generation(s, user_id, template_id, day) is not None:
                raise AlreadyGenerated(template_id, day)
            gen = DailyRoutineGeneration(
                user_id=user_id,
                template_id=template_id,
                target_date=day,
                tasks_generated=len(pairs),
                status="completed",
            )
            s.add(gen)
            s.flush()
            for d, task in pairs:
                s.add(GeneratedTaskRecord(
                    task_id=task.id,
                    template_id=template_id,
                    template_task_id=d.id,
                    generation_id=gen.id,
                    target_date=day,
                ))
            s.commit()
        except AlreadyGenerated:
            s.rollback()
            raise
        except IntegrityError:
            # lost the race to a concurrent writer on the completed-key index
            s.rollback()
            raise AlreadyGenerated(template_id, day)
        except Exception as e:
            s.rollback()
            print(f"[generation] template {template_id} for user {user_id} on {day} failed after {created} task(s): {e!r}")
            _record_failure(user_id, template_id, day, created, repr(e))
            raise PersistenceError(f"generation failed after {created} task(s): {e}", partial_count=created) from e

        tasks = [task for _, task in pairs]
        print(f"[generation] user {user_id} template {template_id} ({tpl.name}) → {len(tasks)} task(s) for {day}")
        result = {
            "success": True,
            "message": f"Generated {len(tasks)} task(s) for {day.isoformat()}",
            "target_date": day,
            "tasks_generated": len(tasks),
            "generation": generation_dict(gen),
            "template": template_dict(tpl),
            "tasks": [task_dict(t) for t in tasks],
        }
        debug_log("generation result", result, tag="generation")
        return result


def generate_all(
    user_id: int,
    target_date: Any = None,
    *,
    now: Optional[datetime] = None,
    notify: bool = False,
    channel=None,
) -> dict:
    """Fan generate() over every active template; one template failing never stops the rest."""
    day = _target(target_date, now)
    with SessionLocal() as s:
        templates = [(t.id, t.name) for t in list_active_templates(s, user_id)]

    results = []
    ok = skipped = failed = total_tasks = 0
    for template_id, name in templates:
        entry = {"template_id": template_id, "template_name": name, "tasks_generated": 0}
        try:
            r = generate(user_id, template_id, day, now=now, notify=notify, channel=channel)
            entry.update(status="generated", tasks_generated=r["tasks_generated"], message=r["message"])
            ok += 1
            total_tasks += r["tasks_generated"]
        except AlreadyGenerated as e:
            entry.update(status="skipped", message=str(e))
            skipped += 1
        except (GenerationError, PersistenceError) as e:
            entry.update(status="failed", message=str(e))
            failed += 1
        except Exception as e:
            print(f"[generation] unexpected failure for user {user_id} template {template_id}: {e!r}")
            entry.update(status="failed", message=str(e))
            failed += 1
        results.append(entry)

    return {
        "success": True,
        "target_date": day,
        "total_templates": len(templates),
        "successful_generations": ok,
        "skipped_generations": skipped,
        "failed_generations": failed,
        "total_tasks_generated": total_tasks,
        "results": results,
    }


# ──────────────────────────────────────────────────────────────────────────────
# Preview / delete
# ──────────────────────────────────────────────────────────────────────────────

def preview(user_id: int, template_id: int, target_date: Any = None, *, now: Optional[datetime] = None) -> dict:
    day = _target(target_date, now)
    with SessionLocal() as s:
        tpl = get_template(s, template_id, user_id)
        definitions = active_template_tasks(s, tpl.id)
        already = _completed_generation(s, user_id, template_id, day) is not None
        tasks = []
        for d in definitions:
            row = template_task_dict(d)
            row["due_date"] = day
            row["status"] = "pending"
            tasks.append(row)
        return {
            "template": template_dict(tpl),
            "target_date": day,
            "already_generated": already,
            "tasks": tasks,
            "tasks_to_generate": 0 if already else len(tasks),
        }


def delete_generation(user_id: int, template_id: int, target_date: Any, *, now: Optional[datetime] = None) -> dict:
    """Delete the tasks a generation produced and retire its completed row so the day can be regenerated."""
    day = _target(target_date, now)
    with _lock_for_key((user_id, template_id)):
        with SessionLocal() as s:
            pairs = _generated_records(s, user_id, template_id, day)
            completed = (
                s.query(DailyRoutineGeneration)
                .filter(
                    DailyRoutineGeneration.user_id == user_id,
                    DailyRoutineGeneration.template_id == template_id,
                    DailyRoutineGeneration.target_date == day,
                    DailyRoutineGeneration.status == "completed",
                )
                .all()
            )
            if not pairs and not completed:
                raise GenerationNotFound(template_id, day)
            task_ids = sorted({task.id for _, task in pairs})
            for task_id in task_ids:
                delete_task(s, task_id, user_id)
            for g in completed:
                g.status = "deleted"
            s.commit()
    print(f"[generation] user {user_id} template {template_id}: deleted {len(task_ids)} generated task(s) for {day}")
    return {
        "success": True,
        "message": f"Deleted {len(task_ids)} generated task(s) for {day.isoformat()}",
        "target_date": day,
        "tasks_deleted": len(task_ids),
    }


# ──────────────────────────────────────────────────────────────────────────────
# Reads
# ──────────────────────────────────────────────────────────────────────────────

def generated_tasks_for_date(user_id: int, target_date: Any = None, *, now: Optional[datetime] = None) -> list[dict]:
    day = _target(target_date, now)
    with SessionLocal() as s:
        out = []
        for rec, task in _generated_records(s, user_id, None, day):
            row = task_dict(task)
            row["template_id"] = rec.template_id
            row["template_task_id"] = rec.template_task_id
            row["generation_id"] = rec.generation_id
            out.append(row)
        return out


def generation_status(user_id: int, target_date: Any = None, *, now: Optional[datetime] = None) -> dict:
    day = _target(target_date, now)
    with SessionLocal() as s:
        templates = list_templates(s, user_id, include_inactive=False)
        counts = dict(
            s.query(GeneratedTaskRecord.template_id, func.count(GeneratedTaskRecord.id))
            .join(Task, Task.id == GeneratedTaskRecord.task_id)
            .filter(Task.user_id == user_id, GeneratedTaskRecord.target_date == day)
            .group_by(GeneratedTaskRecord.template_id)
            .all()
        )
        summary = []
        for tpl in templates:
            latest = (
                s.query(DailyRoutineGeneration)
                .filter(
                    DailyRoutineGeneration.user_id == user_id,
                    DailyRoutineGeneration.template_id == tpl.id,
                    DailyRoutineGeneration.target_date == day,
                )
                .order_by(DailyRoutineGeneration.created_at.desc(), DailyRoutineGeneration.id.desc())
                .first()
            )
            summary.append({
                "template_id": tpl.id,
                "template_name": tpl.name,
                "is_generated": bool(latest and latest.status == "completed"),
                "generation_status": latest.status if latest else None,
                "tasks_generated": latest.tasks_generated if latest else 0,
                "actual_tasks_count": int(counts.get(tpl.id, 0)),
            })
    return {
        "target_date": day,
        "templates": summary,
        "generated_tasks": generated_tasks_for_date(user_id, day),
    }


def generation_history(
    user_id: int,
    *,
    template_id: Optional[int] = None,
    date_from: Any = None,
    date_to: Any = None,
    limit: int = 50,
    offset: int = 0,
) -> list[dict]:
    with SessionLocal() as s:
        q = s.query(DailyRoutineGeneration).filter(DailyRoutineGeneration.user_id == user_id)
        if template_id is not None:
            q = q.filter(DailyRoutineGeneration.template_id == template_id)
        if date_from:
            q = q.filter(DailyRoutineGeneration.target_date >= parse_date(date_from))
        if date_to:
            q = q.filter(DailyRoutineGeneration.target_date <= parse_date(date_to))
        rows = (
            q.order_by(DailyRoutineGeneration.target_date.desc(), DailyRoutineGeneration.created_at.desc(),
                       DailyRoutineGeneration.id.desc())
            .limit(max(1, min(int(limit), 500)))
            .offset(max(0, int(offset)))
            .all()
        )
        return [generation_dict(g) for g in rows]
