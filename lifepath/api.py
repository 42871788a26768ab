# lifepath/api.py
# Health + token-guarded admin surface over the routine engine: manual triggers,
# scheduler control, routine generation and reminder settings/history.

import os
from datetime import date, datetime, time
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from .config import settings
from .db import SessionLocal, init_db, ping
from .errors import (
    AlreadyGenerated,
    GenerationNotFound,
    PersistenceError,
    TemplateEmpty,
    TemplateInactive,
    TemplateInUse,
    TemplateNotFound,
)
from .models import User
from . import dispatcher, generation, notification_log, planner, reminder_settings, templates
from .scheduler import Orchestrator

ENV = os.getenv("ENV", "development").lower()
APP_START = datetime.now().astimezone()

app = FastAPI(title="LifePath Routine Engine")
orchestrator = Orchestrator()


def _print_env_banner():
    try:
        print("\n" + "═" * 72)
        print(f"🚀 Starting LifePath routine engine [{ENV.upper()}]")
        print(f"🕒 Timezone: {settings.APP_TIMEZONE} | channel: {settings.DELIVERY_CHANNEL}")
        print("═" * 72 + "\n")
    except Exception:
        pass


@app.on_event("startup")
def on_startup():
    init_db(reset=settings.RESET_DB_ON_STARTUP)
    if settings.SEED_DEMO_USER:
        from .seed import run_seed
        run_seed()
    if settings.SCHEDULER_ENABLED:
        orchestrator.start()
    _print_env_banner()


@app.on_event("shutdown")
def on_shutdown():
    orchestrator.stop()


# ──────────────────────────────────────────────────────────────────────────────
# Health
# ──────────────────────────────────────────────────────────────────────────────

@app.get("/health")
def health():
    return {
        "ok": True,
        "env": ENV,
        "timezone": settings.APP_TIMEZONE,
        "db": ping(),
        "scheduler_running": orchestrator.running,
        "uptime_seconds": int((datetime.now().astimezone() - APP_START).total_seconds()),
    }


# ──────────────────────────────────────────────────────────────────────────────
# Admin auth + helpers
# ──────────────────────────────────────────────────────────────────────────────

def _require_admin(x_admin_token: str = Header(None, alias="X-Admin-Token")) -> None:
    expected = (settings.ADMIN_API_TOKEN or os.getenv("ADMIN_API_TOKEN") or "").strip()
    if not expected:
        raise HTTPException(status_code=503, detail="ADMIN_API_TOKEN not configured")
    if x_admin_token != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")


admin = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(_require_admin)])


def _ensure_user(user_id: int) -> None:
    with SessionLocal() as s:
        if s.get(User, user_id) is None:
            raise HTTPException(status_code=404, detail="User not found")


def _generation_error(e: Exception) -> HTTPException:
    if isinstance(e, (TemplateNotFound, GenerationNotFound)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (TemplateInactive, TemplateEmpty, TemplateInUse)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, PersistenceError):
        return HTTPException(status_code=500, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


class _Body(BaseModel):
    model_config = ConfigDict(extra="forbid")


class GenerateBody(_Body):
    target_date: Optional[date] = None


class TemplateTaskBody(_Body):
    title: str
    description: Optional[str] = None
    category: Optional[str] = None
    priority: str = "medium"
    time_start: Optional[time] = None
    time_end: Optional[time] = None
    estimated_duration: Optional[int] = None
    order_index: Optional[int] = None
    is_active: bool = True


class TemplateBody(_Body):
    name: str
    description: Optional[str] = None
    tasks: list[TemplateTaskBody] = Field(default_factory=list)


class TemplatePatchBody(_Body):
    name: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None


class SettingsBody(_Body):
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


# ──────────────────────────────────────────────────────────────────────────────
# Scheduler + manual triggers
# ──────────────────────────────────────────────────────────────────────────────

@admin.get("/scheduler/status")
def scheduler_status():
    return orchestrator.status()


@admin.post("/scheduler/start")
def scheduler_start():
    return orchestrator.start()


@admin.post("/scheduler/stop")
def scheduler_stop():
    return orchestrator.stop()


@admin.post("/scheduler/run/{job_name}")
def scheduler_run(job_name: str):
    try:
        return orchestrator.run_job(job_name)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown job {job_name!r}")


@admin.post("/reminders/process")
def trigger_process_pending():
    return dispatcher.process_pending(channel=orchestrator.channel)


@admin.post("/reminders/overdue")
def trigger_overdue():
    return dispatcher.check_overdue(channel=orchestrator.channel)


@admin.post("/reminders/summaries")
def trigger_summaries():
    return dispatcher.send_daily_summaries(channel=orchestrator.channel)


# ──────────────────────────────────────────────────────────────────────────────
# Reminder settings / history
# ──────────────────────────────────────────────────────────────────────────────

@admin.get("/users/{user_id}/reminder-settings")
def get_reminder_settings(user_id: int):
    _ensure_user(user_id)
    return reminder_settings.load_settings(user_id)


@admin.put("/users/{user_id}/reminder-settings")
def put_reminder_settings(user_id: int, body: SettingsBody):
    _ensure_user(user_id)
    try:
        return reminder_settings.update_settings(user_id, reminder_settings.SettingsUpdate(**body.model_dump()))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@admin.get("/users/{user_id}/reminders/pending")
def get_pending_reminders(user_id: int, limit: int = 50):
    _ensure_user(user_id)
    return planner.pending_reminders(user_id, limit=limit)


@admin.get("/users/{user_id}/notifications")
def get_notification_history(
    user_id: int,
    notification_type: Optional[str] = None,
    delivery_status: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    limit: int = 50,
    offset: int = 0,
):
    _ensure_user(user_id)
    return notification_log.history(
        user_id,
        notification_type=notification_type,
        delivery_status=delivery_status,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )


@admin.get("/users/{user_id}/notifications/stats")
def get_notification_stats(user_id: int, days: int = 30):
    _ensure_user(user_id)
    return notification_log.stats(user_id, days=days)


# ──────────────────────────────────────────────────────────────────────────────
# Routines
# ──────────────────────────────────────────────────────────────────────────────

@admin.get("/users/{user_id}/routines")
def list_routines(user_id: int, include_inactive: bool = True):
    _ensure_user(user_id)
    with SessionLocal() as s:
        rows = templates.list_templates(s, user_id, include_inactive=include_inactive)
        return [templates.template_dict(t, list(t.tasks)) for t in rows]


@admin.post("/users/{user_id}/routines", status_code=201)
def create_routine(user_id: int, body: TemplateBody):
    _ensure_user(user_id)
    with SessionLocal() as s:
        try:
            tpl = templates.create_template(
                s,
                user_id,
                body.name,
                body.description,
                [templates.TemplateTaskFields(**t.model_dump()) for t in body.tasks],
            )
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        s.commit()
        _, tasks = templates.get_template_with_tasks(s, tpl.id, user_id)
        return templates.template_dict(tpl, tasks)


@admin.patch("/users/{user_id}/routines/{template_id}")
def patch_routine(user_id: int, template_id: int, body: TemplatePatchBody):
    with SessionLocal() as s:
        try:
            tpl = templates.update_template(s, template_id, user_id, templates.TemplateUpdate(**body.model_dump()))
        except TemplateNotFound as e:
            raise _generation_error(e)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        s.commit()
        return templates.template_dict(tpl)


@admin.delete("/users/{user_id}/routines/{template_id}")
def delete_routine(user_id: int, template_id: int):
    with SessionLocal() as s:
        try:
            templates.delete_template(s, template_id, user_id)
        except (TemplateNotFound, TemplateInUse) as e:
            raise _generation_error(e)
        s.commit()
    return {"ok": True}


@admin.post("/users/{user_id}/routines/generate-all")
def generate_all_routines(user_id: int, body: GenerateBody = GenerateBody()):
    _ensure_user(user_id)
    return generation.generate_all(user_id, body.target_date)


@admin.get("/users/{user_id}/routines/generation-status")
def routine_generation_status(user_id: int, target_date: Optional[date] = None):
    _ensure_user(user_id)
    return generation.generation_status(user_id, target_date)


@admin.get("/users/{user_id}/routines/generation-history")
def routine_generation_history(
    user_id: int,
    template_id: Optional[int] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    limit: int = 50,
    offset: int = 0,
):
    _ensure_user(user_id)
    return generation.generation_history(
        user_id, template_id=template_id, date_from=date_from, date_to=date_to, limit=limit, offset=offset
    )


@admin.get("/users/{user_id}/routines/generated-tasks")
def routine_generated_tasks(user_id: int, target_date: Optional[date] = None):
    _ensure_user(user_id)
    return generation.generated_tasks_for_date(user_id, target_date)


@admin.post("/users/{user_id}/routines/{template_id}/generate")
def generate_routine(user_id: int, template_id: int, body: GenerateBody = GenerateBody()):
    try:
        return generation.generate(user_id, template_id, body.target_date)
    except AlreadyGenerated as e:
        return {"success": False, "message": str(e), "tasks_generated": 0, "target_date": e.target_date}
    except (TemplateNotFound, TemplateInactive, TemplateEmpty, PersistenceError) as e:
        raise _generation_error(e)


@admin.get("/users/{user_id}/routines/{template_id}/preview")
def preview_routine(user_id: int, template_id: int, target_date: Optional[date] = None):
    try:
        return generation.preview(user_id, template_id, target_date)
    except TemplateNotFound as e:
        raise _generation_error(e)


@admin.delete("/users/{user_id}/routines/{template_id}/generated")
def delete_generated_routine(user_id: int, template_id: int, target_date: date):
    try:
        return generation.delete_generation(user_id, template_id, target_date)
    except GenerationNotFound as e:
        raise _generation_error(e)


app.include_router(admin)
