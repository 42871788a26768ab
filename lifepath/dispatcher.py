# lifepath/dispatcher.py
"""
Reminder dispatcher. Every tick:
  1) process_pending: deliver due ScheduledReminder rows (quiet hours consume them as skipped)
  2) check_overdue: alert on past-due, unfinished tasks (deduped via the notification log)
  3) send_daily_summaries: one digest per user whose summary time falls in this tick

Each reminder / alert / summary is its own unit of work: one session, one commit.
A failing unit is counted and the sweep moves on.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import exists, or_

from .channels import DeliveryChannel, get_channel
from .clock import local_midnight_utc, local_today, minutes_of_day, resolve_now, to_local
from .config import settings
from .db import SessionLocal
from .debug_utils import debug_log
from .errors import DeliveryError
from .messages import (
    RenderedMessage,
    render_daily_summary,
    render_overdue,
    render_routine_generated,
    render_task_due,
    render_task_start,
)
from .models import DeliveryTarget, NotificationLog, ReminderSettings, ScheduledReminder, Task
from .notification_log import has_recent, write_log
from .reminder_settings import active_delivery_target, get_or_create_settings, get_settings, in_quiet_hours

QUIET_HOURS_REASON = "quiet hours"


class _LazyChannel:
    """Builds the configured channel on first use so idle ticks never need credentials."""

    def __init__(self, channel: Optional[DeliveryChannel]):
        self._channel = channel

    def send(self, destination: str, message: RenderedMessage) -> str:
        if self._channel is None:
            self._channel = get_channel()
        return self._channel.send(destination, message)


def _verified_target_join(q, user_col):
    return q.join(DeliveryTarget, DeliveryTarget.user_id == user_col).filter(
        DeliveryTarget.is_verified.is_(True),
        DeliveryTarget.is_active.is_(True),
    )


# ──────────────────────────────────────────────────────────────────────────────
# Scheduled reminders
# ──────────────────────────────────────────────────────────────────────────────

def _render_reminder(r: ScheduledReminder, task: Task) -> RenderedMessage:
    if r.reminder_type == "task_due":
        return render_task_due(task)
    return render_task_start(task, r.minutes_before)


def _consume(session, r: ScheduledReminder, now_utc: datetime, reason: str, *, title=None, body=None) -> None:
    r.status = "sent"
    r.sent_at = now_utc
    write_log(
        session,
        created_at=now_utc,
        user_id=r.user_id,
        task_id=r.task_id,
        reminder_id=r.id,
        notification_type=r.reminder_type,
        title=title,
        body=body,
        scheduled_for=r.fire_at,
        delivery_status="skipped",
        error_message=reason,
    )


def _retry_delay(attempts: int) -> timedelta:
    base = max(0, settings.REMINDER_RETRY_BASE_SECONDS)
    seconds = min(base * 2 ** max(0, attempts - 1), settings.REMINDER_RETRY_MAX_SECONDS)
    return timedelta(seconds=seconds)


def _dispatch_one(reminder_id: int, now_utc: datetime, channel) -> str:
    with SessionLocal() as s:
        r = (
            s.query(ScheduledReminder)
            .filter(ScheduledReminder.id == reminder_id, ScheduledReminder.status == "pending")
            .with_for_update(skip_locked=True)
            .one_or_none()
        )
        if r is None:
            # claimed by a concurrent sweep or discarded since the scan
            return "gone"
        target = active_delivery_target(s, r.user_id)
        if target is None:
            return "gone"

        task = s.get(Task, r.task_id) if r.task_id is not None else None
        if task is None:
            _consume(s, r, now_utc, "task no longer exists")
            s.commit()
            return "skipped"
        if task.status == "done":
            _consume(s, r, now_utc, "task already done", title=task.title)
            s.commit()
            return "skipped"

        msg = _render_reminder(r, task)
        user_settings = get_or_create_settings(s, r.user_id)
        if in_quiet_hours(user_settings, now_utc):
            _consume(s, r, now_utc, QUIET_HOURS_REASON, title=msg.title, body=msg.body)
            s.commit()
            return "skipped"

        r.attempts = (r.attempts or 0) + 1
        try:
            ref = channel.send(target.destination, msg)
        except DeliveryError as e:
            r.last_error = str(e)[:2000]
            r.next_attempt_at = now_utc + _retry_delay(r.attempts)
            cap = settings.REMINDER_MAX_ATTEMPTS
            if cap > 0 and r.attempts >= cap:
                r.status = "failed"
                print(f"[dispatcher] reminder {r.id} gave up after {r.attempts} attempt(s)")
            write_log(
                s,
                created_at=now_utc,
                user_id=r.user_id,
                task_id=r.task_id,
                reminder_id=r.id,
                notification_type=r.reminder_type,
                title=msg.title,
                body=msg.body,
                scheduled_for=r.fire_at,
                delivery_status="failed",
                error_message=str(e)[:2000],
            )
            s.commit()
            return "failed"

        r.status = "sent"
        r.sent_at = now_utc
        r.last_error = None
        r.next_attempt_at = None
        write_log(
            s,
            created_at=now_utc,
            user_id=r.user_id,
            task_id=r.task_id,
            reminder_id=r.id,
            notification_type=r.reminder_type,
            title=msg.title,
            body=msg.body,
            scheduled_for=r.fire_at,
            sent_at=now_utc,
            delivery_status="sent",
            external_message_id=ref or None,
        )
        s.commit()
        return "sent"


def process_pending(now: Optional[datetime] = None, channel: Optional[DeliveryChannel] = None) -> dict:
    now_utc = resolve_now(now)
    with SessionLocal() as s:
        q = s.query(ScheduledReminder.id).filter(
            ScheduledReminder.status == "pending",
            ScheduledReminder.fire_at <= now_utc,
            or_(ScheduledReminder.next_attempt_at.is_(None), ScheduledReminder.next_attempt_at <= now_utc),
        )
        # first attempts go ahead of retries so one failing destination can't fill the batch
        ids = [
            row[0]
            for row in _verified_target_join(q, ScheduledReminder.user_id)
            .order_by(ScheduledReminder.attempts.asc(), ScheduledReminder.fire_at.asc(), ScheduledReminder.id.asc())
            .limit(settings.PENDING_BATCH_LIMIT)
            .all()
        ]

    out = {"ok": True, "processed": 0, "sent": 0, "skipped": 0, "failed": 0}
    ch = _LazyChannel(channel)
    for rid in ids:
        try:
            outcome = _dispatch_one(rid, now_utc, ch)
        except Exception as e:
            print(f"[dispatcher] reminder {rid} aborted: {e!r}")
            outcome = "failed"
        if outcome == "gone":
            continue
        out["processed"] += 1
        out[outcome] += 1
    if out["processed"]:
        print(f"[dispatcher] pending: processed={out['processed']} sent={out['sent']} "
              f"skipped={out['skipped']} failed={out['failed']}")
    return out


# ──────────────────────────────────────────────────────────────────────────────
# Overdue sweep
# ──────────────────────────────────────────────────────────────────────────────

def _users_in_quiet_hours(session, now_utc: datetime) -> list[int]:
    rows = session.query(ReminderSettings).filter(ReminderSettings.quiet_hours_enabled.is_(True)).all()
    return [row.user_id for row in rows if in_quiet_hours(row, now_utc)]


def _overdue_candidates(now_utc: datetime, today: date) -> list[tuple[int, int]]:
    since = now_utc - timedelta(hours=settings.OVERDUE_DEDUP_HOURS)
    # any attempt counts, failed ones included
    recently_alerted = exists().where(
        NotificationLog.task_id == Task.id,
        NotificationLog.notification_type == "overdue",
        NotificationLog.created_at >= since,
    )
    with SessionLocal() as s:
        quiet_users = _users_in_quiet_hours(s, now_utc)
        q = s.query(Task.id, Task.user_id)
        q = _verified_target_join(q, Task.user_id)
        q = q.outerjoin(ReminderSettings, ReminderSettings.user_id == Task.user_id).filter(
            Task.due_date < today,
            Task.status != "done",
            or_(ReminderSettings.id.is_(None), ReminderSettings.notify_overdue_tasks.is_(True)),
            ~recently_alerted,
        )
        if quiet_users:
            q = q.filter(Task.user_id.notin_(quiet_users))
        rows = (
            q.order_by(Task.due_date.asc(), Task.id.asc())
            .limit(settings.OVERDUE_BATCH_LIMIT)
            .all()
        )
    return [(r[0], r[1]) for r in rows]


def _alert_overdue(task_id: int, now_utc: datetime, today: date, channel) -> str:
    with SessionLocal() as s:
        task = s.get(Task, task_id)
        target = active_delivery_target(s, task.user_id) if task else None
        if task is None or target is None or task.status == "done":
            return "gone"
        if in_quiet_hours(get_settings(s, task.user_id), now_utc):
            # left for a later sweep; nothing logged so dedup doesn't swallow it
            return "deferred"
        since = now_utc - timedelta(hours=settings.OVERDUE_DEDUP_HOURS)
        if has_recent(s, task.user_id, "overdue", since, task_id=task.id, statuses=None):
            return "gone"

        msg = render_overdue(task, today)
        try:
            ref = channel.send(target.destination, msg)
        except DeliveryError as e:
            write_log(
                s,
                created_at=now_utc,
                user_id=task.user_id,
                task_id=task.id,
                notification_type="overdue",
                title=msg.title,
                body=msg.body,
                delivery_status="failed",
                error_message=str(e)[:2000],
            )
            s.commit()
            return "failed"
        write_log(
            s,
            created_at=now_utc,
            user_id=task.user_id,
            task_id=task.id,
            notification_type="overdue",
            title=msg.title,
            body=msg.body,
            sent_at=now_utc,
            delivery_status="sent",
            external_message_id=ref or None,
        )
        s.commit()
        return "sent"


def check_overdue(now: Optional[datetime] = None, channel: Optional[DeliveryChannel] = None) -> dict:
    now_utc = resolve_now(now)
    today = local_today(now_utc)
    out = {"ok": True, "checked": 0, "sent": 0, "failed": 0, "deferred": 0}
    ch = _LazyChannel(channel)
    for task_id, user_id in _overdue_candidates(now_utc, today):
        try:
            outcome = _alert_overdue(task_id, now_utc, today, ch)
        except Exception as e:
            print(f"[dispatcher] overdue alert for task {task_id} (user {user_id}) aborted: {e!r}")
            outcome = "failed"
        if outcome == "gone":
            continue
        out["checked"] += 1
        out[outcome] += 1
    if out["checked"]:
        print(f"[dispatcher] overdue: sent={out['sent']} failed={out['failed']} deferred={out['deferred']}")
    return out


# ──────────────────────────────────────────────────────────────────────────────
# Daily summaries
# ──────────────────────────────────────────────────────────────────────────────

def _summary_due(summary_at, local_now: datetime, window: int) -> bool:
    if summary_at is None:
        return False
    diff = (minutes_of_day(local_now.time()) - minutes_of_day(summary_at)) % (24 * 60)
    return diff < window


def _send_summary(user_id: int, now_utc: datetime, today: date, channel) -> str:
    with SessionLocal() as s:
        target = active_delivery_target(s, user_id)
        if target is None:
            return "gone"
        if has_recent(s, user_id, "daily_summary", local_midnight_utc(today)):
            return "already_sent"
        tasks = (
            s.query(Task)
            .filter(Task.user_id == user_id, Task.due_date == today)
            .order_by(Task.time_start.asc(), Task.id.asc())
            .all()
        )
        if not tasks:
            return "empty"
        msg = render_daily_summary(tasks, today)
        try:
            ref = channel.send(target.destination, msg)
        except DeliveryError as e:
            write_log(
                s,
                created_at=now_utc,
                user_id=user_id,
                notification_type="daily_summary",
                title=msg.title,
                body=msg.body,
                delivery_status="failed",
                error_message=str(e)[:2000],
            )
            s.commit()
            return "failed"
        write_log(
            s,
            created_at=now_utc,
            user_id=user_id,
            notification_type="daily_summary",
            title=msg.title,
            body=msg.body,
            sent_at=now_utc,
            delivery_status="sent",
            external_message_id=ref or None,
        )
        s.commit()
        return "sent"


def send_daily_summaries(now: Optional[datetime] = None, channel: Optional[DeliveryChannel] = None) -> dict:
    now_utc = resolve_now(now)
    local_now = to_local(now_utc)
    today = local_now.date()
    window = max(1, settings.SUMMARY_WINDOW_MINUTES)

    with SessionLocal() as s:
        q = s.query(ReminderSettings.user_id, ReminderSettings.daily_summary_time)
        rows = (
            _verified_target_join(q, ReminderSettings.user_id)
            .filter(ReminderSettings.enable_daily_summary.is_(True))
            .all()
        )
    due_users = [user_id for user_id, at in rows if _summary_due(at, local_now, window)]

    out = {"ok": True, "users": len(due_users), "sent": 0, "failed": 0, "empty": 0, "already_sent": 0}
    ch = _LazyChannel(channel)
    for user_id in due_users:
        try:
            outcome = _send_summary(user_id, now_utc, today, ch)
        except Exception as e:
            print(f"[dispatcher] daily summary for user {user_id} aborted: {e!r}")
            outcome = "failed"
        if outcome in out:
            out[outcome] += 1
    if out["sent"] or out["failed"]:
        print(f"[dispatcher] summaries: sent={out['sent']} failed={out['failed']} empty={out['empty']}")
    return out


# ──────────────────────────────────────────────────────────────────────────────
# Routine generation notice
# ──────────────────────────────────────────────────────────────────────────────

def notify_routine_generation(
    user_id: int,
    template_name: str,
    task_ids: Iterable[int],
    target_date: date,
    channel: Optional[DeliveryChannel] = None,
    now: Optional[datetime] = None,
) -> str:
    """Tell the user a routine was materialized. Never raises; returns the outcome."""
    now_utc = resolve_now(now)
    try:
        with SessionLocal() as s:
            user_settings = get_or_create_settings(s, user_id)
            if not user_settings.enable_routine_generation_notice:
                s.commit()
                return "disabled"
            target = active_delivery_target(s, user_id)
            if target is None:
                s.commit()
                return "no_target"
            ids = list(task_ids)
            tasks = (
                s.query(Task).filter(Task.id.in_(ids)).order_by(Task.time_start.asc(), Task.id.asc()).all()
                if ids else []
            )
            msg = render_routine_generated(template_name, tasks, target_date)
            try:
                ref = _LazyChannel(channel).send(target.destination, msg)
            except DeliveryError as e:
                write_log(s, created_at=now_utc, user_id=user_id, notification_type="routine_generated", title=msg.title,
                          body=msg.body, delivery_status="failed", error_message=str(e)[:2000])
                s.commit()
                return "failed"
            write_log(s, created_at=now_utc, user_id=user_id, notification_type="routine_generated", title=msg.title,
                      body=msg.body, sent_at=now_utc, delivery_status="sent", external_message_id=ref or None)
            s.commit()
            return "sent"
    except Exception as e:
        print(f"[dispatcher] routine notice for user {user_id} failed: {e!r}")
        return "failed"


# ──────────────────────────────────────────────────────────────────────────────
# Tick
# ──────────────────────────────────────────────────────────────────────────────

def run_tick(now: Optional[datetime] = None, channel: Optional[DeliveryChannel] = None) -> dict:
    """All three sweeps on the same `now`; a failing sweep doesn't stop the others, but is re-raised."""
    now_utc = resolve_now(now)
    out: dict = {"ok": True, "now": now_utc}
    first_error: Optional[BaseException] = None
    for name, fn in (
        ("pending", process_pending),
        ("overdue", check_overdue),
        ("summaries", send_daily_summaries),
    ):
        try:
            out[name] = fn(now=now_utc, channel=channel)
        except Exception as e:
            print(f"[dispatcher] {name} sweep failed: {e!r}")
            out[name] = {"ok": False, "error": repr(e)}
            out["ok"] = False
            if first_error is None:
                first_error = e
    debug_log("tick", out, tag="dispatcher")
    if first_error is not None:
        raise first_error
    return out
