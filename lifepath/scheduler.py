# lifepath/scheduler.py
from __future__ import annotations

import threading
import zoneinfo
from datetime import date, datetime
from typing import Any, Callable, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from .channels import DeliveryChannel
from .clock import local_today, resolve_now, utcnow
from .config import DEFAULT_TZ, settings
from .db import SessionLocal
from .dispatcher import run_tick
from .generation import generate_all
from .models import JobAudit
from .retention import cleanup_generations
from .templates import users_with_active_templates

# ──────────────────────────────────────────────────────────────────────────────
# Schedules
# ──────────────────────────────────────────────────────────────────────────────

def default_schedules() -> dict[str, str]:
    return {
        "daily_generation": settings.DAILY_GENERATION_CRON,
        "midnight_generation": settings.MIDNIGHT_GENERATION_CRON,
        "reminder_tick": settings.REMINDER_TICK_CRON,
        "weekly_cleanup": settings.WEEKLY_CLEANUP_CRON,
    }


def _audit(job_name: str, status: str, payload: dict[str, Any] | None = None, error: str | None = None):
    try:
        with SessionLocal() as s:
            s.add(JobAudit(job_name=job_name, status=status, payload=payload or {}, error=error))
            s.commit()
    except Exception as e:
        print(f"[scheduler] audit write failed for {job_name}: {e!r}")


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


# ──────────────────────────────────────────────────────────────────────────────
# Orchestrator
# ──────────────────────────────────────────────────────────────────────────────

class Orchestrator:
    """
    Owns one APScheduler instance and its named cron triggers.

    start() on a running orchestrator reports the current state and registers
    nothing; stop() is idempotent and lets an in-flight job finish.
    """

    def __init__(
        self,
        channel: Optional[DeliveryChannel] = None,
        timezone: Optional[str] = None,
        schedules: Optional[dict[str, str]] = None,
    ):
        self.channel = channel
        self.tz = zoneinfo.ZoneInfo(timezone) if timezone else DEFAULT_TZ
        self.schedules = dict(schedules or default_schedules())
        unknown = set(self.schedules) - set(self._jobs())
        if unknown:
            raise ValueError(f"unknown job name(s): {sorted(unknown)}")
        self._scheduler: Optional[BackgroundScheduler] = None
        self._lock = threading.Lock()
        self.started_at: Optional[datetime] = None

    # ── lifecycle ────────────────────────────────────────────────────────────
    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def _jobs(self) -> dict[str, Callable[[], Any]]:
        return {
            "daily_generation": self.run_daily_generation,
            "midnight_generation": self.run_daily_generation,
            "reminder_tick": self.run_reminder_tick,
            "weekly_cleanup": self.run_cleanup,
        }

    def start(self) -> dict:
        with self._lock:
            if self.running:
                print("[scheduler] already running; start ignored")
                return self.status()
            sched = BackgroundScheduler(
                executors={"default": ThreadPoolExecutor(4)},
                job_defaults={
                    "coalesce": True,
                    "max_instances": 1,
                    "misfire_grace_time": settings.JOB_MISFIRE_GRACE_SEC,
                },
                timezone=self.tz,
            )
            for name, expr in self.schedules.items():
                sched.add_job(
                    self._run_job,
                    trigger=CronTrigger.from_crontab(expr, timezone=self.tz),
                    args=[name],
                    id=name,
                    name=name,
                    replace_existing=True,
                )
            sched.start()
            self._scheduler = sched
            self.started_at = utcnow()
            print(f"[scheduler] started with {len(self.schedules)} trigger(s) in {self.tz.key}")
            return self.status()

    def stop(self) -> dict:
        with self._lock:
            if self._scheduler is not None:
                if self._scheduler.running:
                    self._scheduler.shutdown(wait=False)
                self._scheduler = None
                self.started_at = None
                print("[scheduler] stopped")
            return self.status()

    def status(self) -> dict:
        triggers = []
        for name, expr in self.schedules.items():
            next_run = None
            if self._scheduler is not None:
                job = self._scheduler.get_job(name)
                if job is not None and job.next_run_time is not None:
                    next_run = job.next_run_time.isoformat()
            triggers.append({"name": name, "schedule": expr, "next_run": next_run})
        return {
            "running": self.running,
            "timezone": self.tz.key,
            "started_at": self.started_at,
            "triggers": triggers,
        }

    # ── jobs ─────────────────────────────────────────────────────────────────
    def _run_job(self, name: str, **kwargs) -> Any:
        fn = self._jobs()[name]
        _audit(name, "started")
        try:
            result = fn(**kwargs)
        except Exception as e:
            print(f"[scheduler] job {name} failed: {e!r}")
            _audit(name, "error", error=repr(e))
            raise
        _audit(name, "ok", payload=_jsonable(result))
        return result

    def run_job(self, name: str, **kwargs) -> Any:
        """Run one named job now, outside its schedule (manual trigger)."""
        if name not in self._jobs():
            raise KeyError(name)
        return self._run_job(name, **kwargs)

    def run_daily_generation(self, target_date: Optional[date] = None, now: Optional[datetime] = None) -> dict:
        now_utc = resolve_now(now)
        day = target_date or local_today(now_utc)
        with SessionLocal() as s:
            user_ids = users_with_active_templates(s)

        out = {"ok": True, "target_date": day, "users": len(user_ids), "users_failed": 0,
               "tasks_generated": 0, "templates_generated": 0, "templates_skipped": 0, "templates_failed": 0}
        for user_id in user_ids:
            try:
                r = generate_all(user_id, day, now=now_utc, notify=True, channel=self.channel)
            except Exception as e:
                print(f"[scheduler] generation for user {user_id} failed: {e!r}")
                out["users_failed"] += 1
                continue
            out["tasks_generated"] += r["total_tasks_generated"]
            out["templates_generated"] += r["successful_generations"]
            out["templates_skipped"] += r["skipped_generations"]
            out["templates_failed"] += r["failed_generations"]
        print(f"[scheduler] generation {day}: users={out['users']} tasks={out['tasks_generated']} "
              f"skipped={out['templates_skipped']} failed={out['templates_failed'] + out['users_failed']}")
        return out

    def run_reminder_tick(self, now: Optional[datetime] = None) -> dict:
        return run_tick(now=now, channel=self.channel)

    def run_cleanup(self, now: Optional[datetime] = None, retention_days: Optional[int] = None) -> dict:
        return cleanup_generations(retention_days=retention_days, now=now)
