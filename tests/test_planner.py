from __future__ import annotations

from datetime import date, datetime, time

import pytest

from lifepath.db import SessionLocal
from lifepath.errors import TaskNotFound
from lifepath.models import DeliveryTarget, ReminderSettings, ScheduledReminder
from lifepath.planner import pending_reminders
from lifepath.reminder_settings import (
    SettingsUpdate,
    in_quiet_hours,
    load_settings,
    normalize_offsets,
    update_settings,
)
from lifepath.tasks import TaskUpdate, complete_task, delete_task, update_task

DAY = date(2024, 5, 1)
NOW = datetime(2024, 4, 29, 12, 0)


def _reminders(task_id: int, status: str = "pending"):
    with SessionLocal() as s:
        rows = (
            s.query(ScheduledReminder)
            .filter(ScheduledReminder.task_id == task_id, ScheduledReminder.status == status)
            .order_by(ScheduledReminder.fire_at)
            .all()
        )
        return [(r.reminder_type, r.minutes_before, r.fire_at) for r in rows]


def test_start_reminders_for_every_offset_plus_due(user_id, make_task):
    task_id = make_task(user_id, due_date=DAY, time_start=time(9, 0), now=NOW)
    assert _reminders(task_id) == [
        ("task_due", 1440, datetime(2024, 4, 30, 0, 0)),
        ("task_start", 60, datetime(2024, 5, 1, 8, 0)),
        ("task_start", 30, datetime(2024, 5, 1, 8, 30)),
        ("task_start", 15, datetime(2024, 5, 1, 8, 45)),
    ]


def test_offsets_already_in_the_past_are_skipped(user_id, make_task):
    now = datetime(2024, 5, 1, 8, 20)
    task_id = make_task(user_id, due_date=DAY, time_start=time(9, 0), now=now)
    assert _reminders(task_id) == [
        ("task_start", 30, datetime(2024, 5, 1, 8, 30)),
        ("task_start", 15, datetime(2024, 5, 1, 8, 45)),
    ]


def test_task_without_start_time_gets_only_due_reminder(user_id, make_task):
    task_id = make_task(user_id, due_date=DAY, now=NOW)
    assert [r[0] for r in _reminders(task_id)] == ["task_due"]


def test_no_verified_target_means_no_reminders(make_user, make_task):
    unverified = make_user(verified=False)
    task_id = make_task(unverified, due_date=DAY, time_start=time(9, 0), now=NOW)
    assert _reminders(task_id) == []

    nobody = make_user(name="Nobody", destination=None)
    task_id = make_task(nobody, due_date=DAY, time_start=time(9, 0), now=NOW)
    assert _reminders(task_id) == []


def test_disabled_reminder_kinds_are_not_planned(user_id, make_task):
    update_settings(user_id, SettingsUpdate(enable_task_start_reminder=False, enable_task_due_reminder=False))
    task_id = make_task(user_id, due_date=DAY, time_start=time(9, 0), now=NOW)
    assert _reminders(task_id) == []


def test_done_task_is_not_planned(user_id, make_task):
    task_id = make_task(user_id, due_date=DAY, time_start=time(9, 0), status="done", now=NOW)
    assert _reminders(task_id) == []


def test_editing_start_time_replans_pending_and_keeps_sent(user_id, make_task):
    update_settings(user_id, SettingsUpdate(reminder_before_minutes=[15, 60], enable_task_due_reminder=False))
    task_id = make_task(user_id, due_date=DAY, time_start=time(9, 0), now=NOW)
    with SessionLocal() as s:
        early = s.query(ScheduledReminder).filter_by(task_id=task_id, minutes_before=60).one()
        early.status = "sent"
        early.sent_at = datetime(2024, 5, 1, 8, 0)
        s.commit()

    with SessionLocal() as s:
        update_task(s, task_id, user_id, TaskUpdate(time_start=time(10, 0)), now=NOW)
        s.commit()

    assert _reminders(task_id) == [
        ("task_start", 60, datetime(2024, 5, 1, 9, 0)),
        ("task_start", 15, datetime(2024, 5, 1, 9, 45)),
    ]
    assert _reminders(task_id, status="sent") == [("task_start", 60, datetime(2024, 5, 1, 8, 0))]


def test_moving_due_date_replans(user_id, make_task):
    update_settings(user_id, SettingsUpdate(reminder_before_minutes=[15]))
    task_id = make_task(user_id, due_date=DAY, time_start=time(9, 0), now=NOW)
    with SessionLocal() as s:
        update_task(s, task_id, user_id, TaskUpdate(due_date=date(2024, 5, 3)), now=NOW)
        s.commit()
    assert _reminders(task_id) == [
        ("task_due", 1440, datetime(2024, 5, 2, 0, 0)),
        ("task_start", 15, datetime(2024, 5, 3, 8, 45)),
    ]


def test_editing_other_fields_leaves_reminders_alone(user_id, make_task):
    task_id = make_task(user_id, due_date=DAY, time_start=time(9, 0), now=NOW)
    before = _reminders(task_id)
    with SessionLocal() as s:
        update_task(s, task_id, user_id, TaskUpdate(title="Renamed", priority="high"), now=NOW)
        s.commit()
    assert _reminders(task_id) == before


def test_completing_discards_and_reopening_replans(user_id, make_task):
    update_settings(user_id, SettingsUpdate(reminder_before_minutes=[15], enable_task_due_reminder=False))
    task_id = make_task(user_id, due_date=DAY, time_start=time(9, 0), now=NOW)
    with SessionLocal() as s:
        complete_task(s, task_id, user_id)
        s.commit()
    assert _reminders(task_id) == []

    with SessionLocal() as s:
        update_task(s, task_id, user_id, TaskUpdate(status="pending"), now=NOW)
        s.commit()
    assert _reminders(task_id) == [("task_start", 15, datetime(2024, 5, 1, 8, 45))]


def test_delete_task_removes_its_reminders(user_id, make_task):
    task_id = make_task(user_id, due_date=DAY, time_start=time(9, 0), now=NOW)
    with SessionLocal() as s:
        delete_task(s, task_id, user_id)
        s.commit()
        assert s.query(ScheduledReminder).count() == 0
        with pytest.raises(TaskNotFound):
            delete_task(s, task_id, user_id)


def test_pending_reminders_listing(user_id, make_task):
    make_task(user_id, due_date=DAY, time_start=time(9, 0), now=NOW)
    rows = pending_reminders(user_id, limit=2)
    assert len(rows) == 2
    assert rows[0]["reminder_type"] == "task_due"
    assert rows[0]["fire_at"] <= rows[1]["fire_at"]


def test_offsets_are_validated_and_deduplicated():
    assert normalize_offsets([30, 15, 30]) == [30, 15]
    with pytest.raises(ValueError):
        normalize_offsets([0])
    with pytest.raises(ValueError):
        normalize_offsets([1441])


def test_update_settings_is_partial(user_id):
    update_settings(user_id, SettingsUpdate(daily_summary_time=time(8, 30)))
    out = update_settings(user_id, SettingsUpdate(quiet_hours_enabled=True))
    assert out["daily_summary_time"] == "08:30"
    assert out["quiet_hours_enabled"] is True
    assert out["reminder_before_minutes"] == [15, 30, 60]
    assert load_settings(user_id) == out


@pytest.mark.parametrize(
    "at, expected",
    [
        (datetime(2024, 5, 1, 21, 59), False),
        (datetime(2024, 5, 1, 22, 0), True),
        (datetime(2024, 5, 1, 23, 30), True),
        (datetime(2024, 5, 2, 3, 0), True),
        (datetime(2024, 5, 2, 7, 0), True),
        (datetime(2024, 5, 2, 7, 1), False),
        (datetime(2024, 5, 2, 12, 0), False),
    ],
)
def test_quiet_hours_window_wraps_midnight(at, expected):
    window = ReminderSettings(quiet_hours_enabled=True, quiet_hours_start=time(22, 0), quiet_hours_end=time(7, 0))
    assert in_quiet_hours(window, at) is expected


def test_quiet_hours_same_day_window_and_disabled():
    lunch = ReminderSettings(quiet_hours_enabled=True, quiet_hours_start=time(12, 0), quiet_hours_end=time(13, 0))
    assert in_quiet_hours(lunch, datetime(2024, 5, 1, 12, 30)) is True
    assert in_quiet_hours(lunch, datetime(2024, 5, 1, 13, 30)) is False

    off = ReminderSettings(quiet_hours_enabled=False, quiet_hours_start=time(0, 0), quiet_hours_end=time(23, 59))
    assert in_quiet_hours(off, datetime(2024, 5, 1, 12, 30)) is False
    assert in_quiet_hours(None, datetime(2024, 5, 1, 12, 30)) is False


def test_deactivated_target_stops_planning(user_id, make_task):
    with SessionLocal() as s:
        s.query(DeliveryTarget).filter_by(user_id=user_id).update({"is_active": False})
        s.commit()
    task_id = make_task(user_id, due_date=DAY, time_start=time(9, 0), now=NOW)
    assert _reminders(task_id) == []
