from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from rescue_reminders import api as api_module
from rescue_reminders.config import Settings
from rescue_reminders.dispatchers import StubNotificationDispatcher
from rescue_reminders.main import create_app
from rescue_reminders.runner import ReminderRunError


def _client() -> TestClient:
    api_module.reset_runtime_state_for_tests()
    api_module.runner.dispatcher = StubNotificationDispatcher(enabled=True)
    return TestClient(create_app())


def _create_owner(client: TestClient, *, email: str = "pilot@example.com") -> int:
    response = client.post(
        "/api/v1/owners",
        json={"email": email, "first_name": "Ada", "last_name": "Jumper"},
    )
    assert response.status_code == 201
    return response.json()["owner_id"]


def _create_device(client: TestClient, owner_id: int, *, interval_months: int = 6) -> dict:
    response = client.post(
        "/api/v1/devices",
        json={
            "owner_id": owner_id,
            "name": "Reserve canopy",
            "serial_number": "RC-100",
            "interval_months": interval_months,
            "last_serviced_at": "2024-01-15T00:00:00Z",
        },
    )
    assert response.status_code == 201
    return response.json()


def _update_payload(**overrides: object) -> dict:
    payload: dict[str, object] = {
        "name": "Reserve canopy",
        "serial_number": "RC-100",
        "interval_months": 6,
        "reminders_enabled": True,
        "last_serviced_at": "2024-01-15T00:00:00Z",
    }
    payload.update(overrides)
    return payload


def test_health() -> None:
    client = _client()

    assert client.get("/api/v1/health").json() == {"status": "ok"}


def test_device_response_includes_schedule() -> None:
    client = _client()
    owner_id = _create_owner(client)

    device = _create_device(client, owner_id)

    assert device["due_at"].startswith("2024-07-15T00:00:00")
    assert device["escalation_at"].startswith("2024-08-15T00:00:00")
    assert device["reminder_state"] == "pending"
    fetched = client.get(f"/api/v1/devices/{device['device_id']}")
    assert fetched.status_code == 200
    assert fetched.json()["name"] == "Reserve canopy"


def test_invalid_interval_is_rejected() -> None:
    client = _client()
    owner_id = _create_owner(client)

    response = client.post(
        "/api/v1/devices",
        json={"owner_id": owner_id, "name": "Harness", "interval_months": 3},
    )

    assert response.status_code == 422
    assert client.get("/api/v1/devices").json()["items"] == []


def test_device_for_unknown_owner_is_404() -> None:
    client = _client()

    response = client.post("/api/v1/devices", json={"owner_id": 999, "name": "Harness", "interval_months": 6})

    assert response.status_code == 404


def test_unknown_device_and_owner_are_404() -> None:
    client = _client()

    assert client.get("/api/v1/devices/999").status_code == 404
    assert client.put("/api/v1/devices/999", json=_update_payload()).status_code == 404
    assert client.delete("/api/v1/devices/999").status_code == 404
    assert client.get("/api/v1/owners/999").status_code == 404
    assert client.patch("/api/v1/owners/999", json={"is_active": False}).status_code == 404
    assert client.delete("/api/v1/owners/999").status_code == 404


def test_run_once_then_repack_resets_reminders() -> None:
    client = _client()
    owner_id = _create_owner(client)
    device = _create_device(client, owner_id)

    run = client.post("/api/v1/reminders/run/once", json={"now_override": "2024-07-15T09:00:00Z"})
    assert run.status_code == 200
    body = run.json()
    assert body["stage1_sent_count"] == 1
    assert body["triggered_by"] == "api"
    assert body["results"][0]["address_masked"] == "p***@example.com"

    notified = client.get(f"/api/v1/devices/{device['device_id']}").json()
    assert notified["reminder_state"] == "stage1_notified"

    same_date = client.put(f"/api/v1/devices/{device['device_id']}", json=_update_payload(notes="checked"))
    assert same_date.json()["reminders_reset"] is False
    assert same_date.json()["device"]["reminder_state"] == "stage1_notified"

    repacked = client.put(
        f"/api/v1/devices/{device['device_id']}",
        json=_update_payload(last_serviced_at="2024-07-20T00:00:00Z"),
    )
    assert repacked.status_code == 200
    assert repacked.json()["reminders_reset"] is True
    assert repacked.json()["device"]["reminder_state"] == "pending"


def test_dry_run_reports_without_sending() -> None:
    client = _client()
    owner_id = _create_owner(client)
    device = _create_device(client, owner_id)

    body = client.post(
        "/api/v1/reminders/run/once",
        json={"now_override": "2024-07-15T09:00:00Z", "dry_run": True},
    ).json()

    assert body["dry_run"] is True
    assert body["results"][0]["status"] == "dry_run"
    assert client.get(f"/api/v1/devices/{device['device_id']}").json()["stage1_sent_at"] is None


def test_inactive_owner_devices_are_not_evaluated() -> None:
    client = _client()
    owner_id = _create_owner(client)
    _create_device(client, owner_id)

    assert client.patch(f"/api/v1/owners/{owner_id}", json={"is_active": False}).json()["is_active"] is False
    body = client.post("/api/v1/reminders/run/once", json={"now_override": "2024-09-01T09:00:00Z"}).json()

    assert body["evaluated_count"] == 0


def test_summary_and_run_lookup() -> None:
    client = _client()
    owner_id = _create_owner(client)
    _create_device(client, owner_id)
    run_id = client.post("/api/v1/reminders/run/once", json={"now_override": "2024-07-15T09:00:00Z"}).json()["run_id"]

    summary = client.get("/api/v1/reminders/summary").json()
    assert summary["device_count"] == 1
    assert summary["last_run_id"] == run_id
    assert summary["last_run_stage1_sent_count"] == 1
    assert summary["batch_running"] is False

    stored = client.get(f"/api/v1/reminders/runs/{run_id}")
    assert stored.status_code == 200
    assert stored.json()["results"][0]["status"] == "sent"
    assert client.get("/api/v1/reminders/runs/rrun_missing").status_code == 404


def test_delete_owner_removes_devices() -> None:
    client = _client()
    owner_id = _create_owner(client)
    device = _create_device(client, owner_id)

    assert client.delete(f"/api/v1/owners/{owner_id}").status_code == 204
    assert client.get(f"/api/v1/devices/{device['device_id']}").status_code == 404


def test_now_override_can_be_disabled(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client()
    monkeypatch.setattr(api_module, "_settings", Settings(reminder_allow_now_override=False))

    response = client.post("/api/v1/reminders/run/once", json={"now_override": "2024-07-15T09:00:00Z"})

    assert response.status_code == 400


def test_ops_token_is_required_when_configured(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client()
    monkeypatch.setattr(api_module, "_settings", Settings(ops_api_token="ops-secret-001"))

    assert client.get("/api/v1/reminders/summary").status_code == 401
    assert client.get("/api/v1/reminders/summary", headers={"Authorization": "Bearer wrong"}).status_code == 401
    allowed = client.get("/api/v1/reminders/summary", headers={"Authorization": "Bearer ops-secret-001"})
    assert allowed.status_code == 200
    assert client.get("/api/v1/health").status_code == 200


def test_overlapping_run_is_409() -> None:
    client = _client()
    lock = api_module.runner._batch_lock
    assert lock.acquire(blocking=False)
    try:
        response = client.post("/api/v1/reminders/run/once")
    finally:
        lock.release()

    assert response.status_code == 409


def test_failed_run_is_503(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client()

    def _fail(*args: object, **kwargs: object) -> None:
        raise ReminderRunError("reminder run rrun_1 failed: disk full")

    monkeypatch.setattr(api_module.runner, "run_once", _fail)

    response = client.post("/api/v1/reminders/run/once")

    assert response.status_code == 503
    assert "disk full" in response.json()["detail"]
