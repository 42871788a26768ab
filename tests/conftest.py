"""Shared fixtures: a throwaway SQLite database in UTC and a recording channel."""

from __future__ import annotations

import os
import tempfile
from datetime import time

_TMP_DIR = tempfile.mkdtemp(prefix="lifepath-tests-")

# must be in place before lifepath.config / lifepath.db are imported
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP_DIR, 'lifepath-test.db')}"
os.environ["APP_TIMEZONE"] = "UTC"
os.environ["DELIVERY_CHANNEL"] = "telegram"
os.environ["TELEGRAM_BOT_TOKEN"] = "test-bot-token"
os.environ["ADMIN_API_TOKEN"] = "test-admin-token"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["SEED_DEMO_USER"] = "false"
os.environ["LIFEPATH_DEBUG"] = "false"

import pytest  # noqa: E402

from lifepath.channels import DeliveryChannel  # noqa: E402
from lifepath.db import SessionLocal, engine  # noqa: E402
from lifepath.errors import DeliveryError  # noqa: E402
from lifepath.models import Base, DeliveryTarget, User  # noqa: E402
from lifepath.tasks import TaskFields, create_task  # noqa: E402
from lifepath.templates import TemplateTaskFields, create_template  # noqa: E402


class FakeChannel(DeliveryChannel):
    """Records every send; raises DeliveryError while `fail` is set or for destinations in `fail_for`."""

    name = "fake"

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.fail_for: set[str] = set()
        self.sent: list[tuple[str, object]] = []

    def send(self, destination, message) -> str:
        if self.fail or destination in self.fail_for:
            raise DeliveryError("boom", channel=self.name, code=500)
        self.sent.append((destination, message))
        return f"msg-{len(self.sent)}"

    @property
    def titles(self) -> list[str]:
        return [m.title for _, m in self.sent]


@pytest.fixture(autouse=True)
def fresh_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def make_user():
    def _make(name: str = "Ana", destination: str | None = "1001", verified: bool = True, active: bool = True) -> int:
        with SessionLocal() as s:
            user = User(name=name)
            s.add(user)
            s.flush()
            if destination is not None:
                s.add(DeliveryTarget(
                    user_id=user.id,
                    channel="telegram",
                    destination=destination,
                    is_verified=verified,
                    is_active=active,
                ))
            s.commit()
            return user.id

    return _make


@pytest.fixture
def user_id(make_user) -> int:
    return make_user()


@pytest.fixture
def make_template():
    def _make(user_id: int, name: str = "Morning", tasks=None, active: bool = True) -> int:
        if tasks is None:
            tasks = [("Workout", time(6, 0)), ("Plan the day", time(7, 0))]
        with SessionLocal() as s:
            tpl = create_template(
                s,
                user_id,
                name,
                None,
                [TemplateTaskFields(title=title, time_start=at) for title, at in tasks],
            )
            if not active:
                tpl.is_active = False
            s.commit()
            return tpl.id

    return _make


@pytest.fixture
def make_task():
    def _make(user_id: int, title: str = "Write report", *, due_date=None, time_start=None,
              status: str = "pending", now=None) -> int:
        with SessionLocal() as s:
            task = create_task(
                s,
                user_id,
                TaskFields(title=title, status=status, due_date=due_date, time_start=time_start),
                now=now,
            )
            s.commit()
            return task.id

    return _make
