from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from lifepath.api import app

AUTH = {"X-Admin-Token": "test-admin-token"}
ROUTINE = {
    "name": "Morning",
    "description": "Start the day",
    "tasks": [
        {"title": "Workout", "priority": "high", "time_start": "06:00", "time_end": "06:45"},
        {"title": "Plan the day", "time_start": "07:00"},
    ],
}


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


def _create_routine(client, user_id: int) -> int:
    resp = client.post(f"/admin/users/{user_id}/routines", json=ROUTINE, headers=AUTH)
    assert resp.status_code == 201, resp.text
    return resp.json()["id"]


def test_health_is_open(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["db"] is True
    assert body["scheduler_running"] is False


def test_admin_requires_token(client):
    assert client.get("/admin/scheduler/status").status_code == 401
    assert client.get("/admin/scheduler/status", headers={"X-Admin-Token": "wrong"}).status_code == 401
    assert client.get("/admin/scheduler/status", headers=AUTH).status_code == 200


def test_routine_lifecycle(client, user_id):
    tpl_id = _create_routine(client, user_id)

    listed = client.get(f"/admin/users/{user_id}/routines", headers=AUTH).json()
    assert [t["title"] for t in listed[0]["tasks"]] == ["Workout", "Plan the day"]

    preview = client.get(
        f"/admin/users/{user_id}/routines/{tpl_id}/preview", params={"target_date": "2024-05-01"}, headers=AUTH
    ).json()
    assert preview["tasks_to_generate"] == 2

    first = client.post(
        f"/admin/users/{user_id}/routines/{tpl_id}/generate", json={"target_date": "2024-05-01"}, headers=AUTH
    )
    assert first.status_code == 200
    assert first.json()["success"] is True
    assert first.json()["tasks_generated"] == 2

    second = client.post(
        f"/admin/users/{user_id}/routines/{tpl_id}/generate", json={"target_date": "2024-05-01"}, headers=AUTH
    )
    assert second.status_code == 200
    assert second.json()["success"] is False
    assert second.json()["tasks_generated"] == 0

    status = client.get(
        f"/admin/users/{user_id}/routines/generation-status", params={"target_date": "2024-05-01"}, headers=AUTH
    ).json()
    assert status["templates"][0]["is_generated"] is True

    history = client.get(f"/admin/users/{user_id}/routines/generation-history", headers=AUTH).json()
    assert len(history) == 1

    deleted = client.delete(
        f"/admin/users/{user_id}/routines/{tpl_id}/generated", params={"target_date": "2024-05-01"}, headers=AUTH
    )
    assert deleted.status_code == 200
    assert deleted.json()["tasks_deleted"] == 2

    missing = client.delete(
        f"/admin/users/{user_id}/routines/{tpl_id}/generated", params={"target_date": "2024-05-01"}, headers=AUTH
    )
    assert missing.status_code == 404


def test_generate_all_and_template_errors(client, user_id):
    tpl_id = _create_routine(client, user_id)
    out = client.post(
        f"/admin/users/{user_id}/routines/generate-all", json={"target_date": "2024-05-01"}, headers=AUTH
    ).json()
    assert out["total_tasks_generated"] == 2

    assert client.post(f"/admin/users/{user_id}/routines/9999/generate", headers=AUTH).status_code == 404

    client.patch(f"/admin/users/{user_id}/routines/{tpl_id}", json={"is_active": False}, headers=AUTH)
    paused = client.post(
        f"/admin/users/{user_id}/routines/{tpl_id}/generate", json={"target_date": "2024-05-02"}, headers=AUTH
    )
    assert paused.status_code == 409

    # generation history keeps the template alive
    assert client.delete(f"/admin/users/{user_id}/routines/{tpl_id}", headers=AUTH).status_code == 409


def test_reminder_settings_roundtrip_and_validation(client, user_id):
    url = f"/admin/users/{user_id}/reminder-settings"
    assert client.get(url, headers=AUTH).json()["reminder_before_minutes"] == [15, 30, 60]

    updated = client.put(url, json={"reminder_before_minutes": [10], "quiet_hours_enabled": True}, headers=AUTH)
    assert updated.status_code == 200
    assert updated.json()["reminder_before_minutes"] == [10]
    assert updated.json()["quiet_hours_enabled"] is True

    assert client.put(url, json={"reminder_before_minutes": [0]}, headers=AUTH).status_code == 422
    assert client.put(url, json={"snooze": True}, headers=AUTH).status_code == 422
    assert client.get("/admin/users/9999/reminder-settings", headers=AUTH).status_code == 404


def test_manual_triggers_and_history(client, user_id):
    assert client.post("/admin/reminders/process", headers=AUTH).json()["ok"] is True
    assert client.post("/admin/reminders/overdue", headers=AUTH).json()["ok"] is True
    assert client.post("/admin/reminders/summaries", headers=AUTH).json()["ok"] is True
    assert client.get(f"/admin/users/{user_id}/reminders/pending", headers=AUTH).json() == []
    assert client.get(f"/admin/users/{user_id}/notifications", headers=AUTH).json() == []
    stats = client.get(f"/admin/users/{user_id}/notifications/stats", headers=AUTH).json()
    assert stats["totals"] == {"sent": 0, "skipped": 0, "failed": 0}


def test_scheduler_controls(client):
    status = client.get("/admin/scheduler/status", headers=AUTH).json()
    assert status["running"] is False
    assert {t["name"] for t in status["triggers"]} == {
        "daily_generation", "midnight_generation", "reminder_tick", "weekly_cleanup",
    }
    assert client.post("/admin/scheduler/run/nope", headers=AUTH).status_code == 404
    ran = client.post("/admin/scheduler/run/weekly_cleanup", headers=AUTH)
    assert ran.status_code == 200
    assert ran.json()["removed"] == 0
