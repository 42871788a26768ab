from __future__ import annotations

from datetime import date, datetime, time, timedelta

import pytest

from lifepath import scheduler
from lifepath.clock import utcnow
from lifepath.db import SessionLocal
from lifepath.generation import generate
from lifepath.models import DailyRoutineGeneration, GeneratedTaskRecord, JobAudit, Task
from lifepath.retention import cleanup_generations
from lifepath.scheduler import Orchestrator

DAY = date(2024, 5, 1)
NOW = datetime(2024, 5, 1, 0, 0)

# far-off schedules so nothing fires while a test holds the scheduler open
QUIET_SCHEDULES = {
    "daily_generation": "0 6 1 1 *",
    "reminder_tick": "0 3 1 1 *",
}


def _audits() -> list[tuple[str, str]]:
    with SessionLocal() as s:
        return [(a.job_name, a.status) for a in s.query(JobAudit).order_by(JobAudit.id).all()]


@pytest.fixture
def orchestrator(channel):
    orch = Orchestrator(channel=channel, timezone="UTC", schedules=QUIET_SCHEDULES)
    yield orch
    orch.stop()


def test_default_schedules_cover_every_job():
    orch = Orchestrator()
    assert set(orch.schedules) == {"daily_generation", "midnight_generation", "reminder_tick", "weekly_cleanup"}
    assert orch.status()["running"] is False


def test_unknown_job_names_are_rejected():
    with pytest.raises(ValueError):
        Orchestrator(schedules={"hourly_magic": "0 * * * *"})


def test_start_stop_lifecycle(orchestrator):
    started = orchestrator.start()
    assert started["running"] is True
    assert started["timezone"] == "UTC"
    assert {t["name"] for t in started["triggers"]} == set(QUIET_SCHEDULES)
    assert all(t["next_run"] is not None for t in started["triggers"])

    again = orchestrator.start()
    assert again["running"] is True
    assert again["started_at"] == started["started_at"]

    stopped = orchestrator.stop()
    assert stopped["running"] is False
    assert all(t["next_run"] is None for t in stopped["triggers"])
    assert orchestrator.stop()["running"] is False

    # a stopped orchestrator can be started again with a fresh scheduler
    assert orchestrator.start()["running"] is True


def test_run_job_rejects_unknown_names(orchestrator):
    with pytest.raises(KeyError):
        orchestrator.run_job("nope")


def test_daily_generation_covers_all_users_and_notifies(make_user, make_template, orchestrator, channel):
    a = make_user(name="A", destination="111")
    b = make_user(name="B", destination="222")
    make_template(a)
    make_template(b, name="Evening", tasks=[("Read", time(21, 0))])

    out = orchestrator.run_job("daily_generation", target_date=DAY, now=NOW)
    assert out["users"] == 2
    assert out["tasks_generated"] == 3
    assert out["templates_generated"] == 2
    assert sorted(dest for dest, _ in channel.sent) == ["111", "222"]
    assert _audits() == [("daily_generation", "started"), ("daily_generation", "ok")]

    rerun = orchestrator.run_daily_generation(target_date=DAY, now=NOW)
    assert rerun["tasks_generated"] == 0
    assert rerun["templates_skipped"] == 2


def test_one_users_failure_does_not_stop_the_job(make_user, make_template, orchestrator, monkeypatch):
    a = make_user(name="A")
    b = make_user(name="B")
    make_template(a)
    make_template(b)
    real = scheduler.generate_all

    def flaky(user_id, *args, **kwargs):
        if user_id == a:
            raise RuntimeError("boom")
        return real(user_id, *args, **kwargs)

    monkeypatch.setattr(scheduler, "generate_all", flaky)
    out = orchestrator.run_daily_generation(target_date=DAY, now=NOW)
    assert out["users_failed"] == 1
    assert out["tasks_generated"] == 2


def test_failing_job_is_audited_and_reraised(orchestrator, monkeypatch):
    def broken(now=None, channel=None):
        raise RuntimeError("tick exploded")

    monkeypatch.setattr(scheduler, "run_tick", broken)
    with pytest.raises(RuntimeError):
        orchestrator.run_job("reminder_tick")
    assert _audits() == [("reminder_tick", "started"), ("reminder_tick", "error")]


def test_reminder_tick_job(user_id, make_task, orchestrator, channel):
    make_task(user_id, title="Invoice", due_date=date(2024, 4, 29))
    out = orchestrator.run_job("reminder_tick", now=datetime(2024, 5, 1, 10, 0))
    assert out["overdue"]["sent"] == 1
    assert channel.titles == ["Overdue: Invoice"]


def test_cleanup_detaches_links_and_removes_old_generations(user_id, make_template, orchestrator):
    tpl_id = make_template(user_id)
    generate(user_id, tpl_id, DAY, now=NOW)

    kept = cleanup_generations(retention_days=90, now=utcnow())
    assert kept["removed"] == 0

    dry = cleanup_generations(retention_days=90, now=utcnow() + timedelta(days=91), dry_run=True)
    assert dry["removed"] == 1
    with SessionLocal() as s:
        assert s.query(DailyRoutineGeneration).count() == 1

    out = orchestrator.run_cleanup(now=utcnow() + timedelta(days=91), retention_days=90)
    assert out["removed"] == 1
    assert out["links_detached"] == 2
    with SessionLocal() as s:
        assert s.query(DailyRoutineGeneration).count() == 0
        assert s.query(Task).count() == 2
        assert {r.generation_id for r in s.query(GeneratedTaskRecord).all()} == {None}
