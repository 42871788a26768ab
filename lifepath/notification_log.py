# lifepath/notification_log.py
# Append-only notification log. Rows are inserted, never updated; the dispatcher
# also reads it as the dedup source for overdue alerts and daily summaries.
from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from .clock import local_midnight_utc, resolve_now
from .db import SessionLocal
from .models import DELIVERY_STATUSES, NOTIFICATION_TYPES, NotificationLog

__all__ = ["write_log", "has_recent", "history", "stats"]


def _console_echo(row: NotificationLog) -> None:
    preview = (row.body or row.title or "").replace("\n", " ")[:120]
    status = (row.delivery_status or "").upper()
    try:
        print(f"[{status}] user #{row.user_id} {row.notification_type} → {preview}")
    except Exception:
        # never let the echo break the write path
        pass


def write_log(
    session: Session,
    *,
    user_id: int,
    notification_type: str,
    delivery_status: str,
    title: Optional[str] = None,
    body: Optional[str] = None,
    task_id: Optional[int] = None,
    reminder_id: Optional[int] = None,
    scheduled_for: Optional[datetime] = None,
    sent_at: Optional[datetime] = None,
    error_message: Optional[str] = None,
    external_message_id: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> NotificationLog:
    """Insert one row in the caller's transaction (caller commits).

    `created_at` defaults to the wall clock; sweeps pass their own `now` so the
    dedup windows below are measured on the same clock that wrote the rows.
    """
    if notification_type not in NOTIFICATION_TYPES:
        raise ValueError(f"unknown notification type {notification_type!r}")
    if delivery_status not in DELIVERY_STATUSES:
        raise ValueError(f"unknown delivery status {delivery_status!r}")
    row = NotificationLog(
        user_id=user_id,
        task_id=task_id,
        reminder_id=reminder_id,
        notification_type=notification_type,
        title=title,
        body=body,
        scheduled_for=scheduled_for,
        sent_at=sent_at,
        delivery_status=delivery_status,
        error_message=error_message,
        external_message_id=external_message_id,
    )
    if created_at is not None:
        row.created_at = created_at
    session.add(row)
    session.flush()
    _console_echo(row)
    return row


def has_recent(
    session: Session,
    user_id: int,
    notification_type: str,
    since: datetime,
    task_id: Optional[int] = None,
    statuses: Optional[Iterable[str]] = ("sent",),
) -> bool:
    """An entry of this type was logged at or after `since`.

    Only rows whose delivery status is in `statuses` count; `statuses=None`
    matches any status (failed and skipped attempts included).
    """
    q = session.query(NotificationLog.id).filter(
        NotificationLog.user_id == user_id,
        NotificationLog.notification_type == notification_type,
        NotificationLog.created_at >= since,
    )
    if statuses is not None:
        q = q.filter(NotificationLog.delivery_status.in_(list(statuses)))
    if task_id is not None:
        q = q.filter(NotificationLog.task_id == task_id)
    return q.first() is not None


def log_dict(row: NotificationLog) -> dict:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "task_id": row.task_id,
        "reminder_id": row.reminder_id,
        "notification_type": row.notification_type,
        "title": row.title,
        "body": row.body,
        "scheduled_for": row.scheduled_for,
        "sent_at": row.sent_at,
        "delivery_status": row.delivery_status,
        "error_message": row.error_message,
        "external_message_id": row.external_message_id,
        "created_at": row.created_at,
    }


def history(
    user_id: int,
    *,
    notification_type: Optional[str] = None,
    delivery_status: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    limit: int = 50,
    offset: int = 0,
) -> list[dict]:
    with SessionLocal() as s:
        q = s.query(NotificationLog).filter(NotificationLog.user_id == user_id)
        if notification_type:
            q = q.filter(NotificationLog.notification_type == notification_type)
        if delivery_status:
            q = q.filter(NotificationLog.delivery_status == delivery_status)
        if date_from:
            q = q.filter(NotificationLog.created_at >= local_midnight_utc(date_from))
        if date_to:
            q = q.filter(NotificationLog.created_at < local_midnight_utc(date_to + timedelta(days=1)))
        rows = (
            q.order_by(NotificationLog.created_at.desc(), NotificationLog.id.desc())
            .limit(max(1, min(int(limit), 500)))
            .offset(max(0, int(offset)))
            .all()
        )
        return [log_dict(r) for r in rows]


def stats(user_id: int, days: int = 30, now: Optional[datetime] = None) -> dict:
    since = resolve_now(now) - timedelta(days=days)
    with SessionLocal() as s:
        rows = (
            s.query(NotificationLog.notification_type, NotificationLog.delivery_status, func.count(NotificationLog.id))
            .filter(NotificationLog.user_id == user_id, NotificationLog.created_at >= since)
            .group_by(NotificationLog.notification_type, NotificationLog.delivery_status)
            .all()
        )
    by_type: dict[str, dict[str, int]] = {}
    totals = {status: 0 for status in DELIVERY_STATUSES}
    for ntype, status, count in rows:
        by_type.setdefault(ntype, {})[status] = int(count)
        totals[status] = totals.get(status, 0) + int(count)
    return {"days": days, "since": since, "totals": totals, "by_type": by_type}
