# lifepath/seed.py
# Dev seed: one demo user with a verified chat target and a "Morning" routine.

from __future__ import annotations

from datetime import time

from sqlalchemy import select
from sqlalchemy.orm import Session

from .clock import utcnow
from .config import settings
from .db import SessionLocal
from .models import DeliveryTarget, RoutineTemplate, User
from .reminder_settings import get_or_create_settings
from .templates import TemplateTaskFields, create_template

DEMO_ROUTINES = [
    {
        "name": "Morning",
        "description": "Start the day",
        "tasks": [
            TemplateTaskFields(title="Workout", category="rest", priority="high", time_start=time(6, 0), time_end=time(6, 45)),
            TemplateTaskFields(title="Plan the day", category="work", priority="medium", time_start=time(7, 0), time_end=time(7, 15)),
            TemplateTaskFields(title="Read 20 pages", category="learn", priority="low", time_start=time(7, 30)),
        ],
    },
]


def upsert_demo_user(session: Session) -> User:
    name = settings.SEED_USER_NAME
    row = session.execute(select(User).where(User.name == name)).scalar_one_or_none()
    if row is None:
        row = User(name=name)
        session.add(row)
        session.flush()

    chat_id = settings.SEED_USER_CHAT_ID
    if chat_id and row.delivery_target is None:
        session.add(DeliveryTarget(
            user_id=row.id,
            channel=settings.DELIVERY_CHANNEL,
            destination=chat_id,
            is_verified=True,
            is_active=True,
            verified_at=utcnow(),
        ))
    get_or_create_settings(session, row.id)
    return row


def upsert_demo_routines(session: Session, user: User) -> int:
    created = 0
    for r in DEMO_ROUTINES:
        exists = session.execute(
            select(RoutineTemplate).where(RoutineTemplate.user_id == user.id, RoutineTemplate.name == r["name"])
        ).scalar_one_or_none()
        if exists:
            continue
        create_template(session, user.id, r["name"], r["description"], r["tasks"])
        created += 1
    return created


def run_seed() -> None:
    with SessionLocal() as s:
        try:
            user = upsert_demo_user(s)
            n = upsert_demo_routines(s, user)
            s.commit()
            print(f"[seed] demo user #{user.id} ready; {n} routine(s) created")
        except Exception as e:
            s.rollback()
            print(f"[seed] failed: {e!r}")
            raise
