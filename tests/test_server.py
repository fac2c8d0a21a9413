from datetime import date, datetime

import pytest
from fastapi.testclient import TestClient

from clock import FixedClock
from config import Settings
from domain import BUDGET_ALERT, Notification
from errors import DataUnavailableError
from repository import SqlAlchemyRepository
from server import app, get_clock, get_repository, get_settings

NOW = datetime(2026, 9, 16, 10)
SECRET = "s3cret"


class UnreachableStore(SqlAlchemyRepository):
    def list_active_users(self):
        raise DataUnavailableError("connection refused")

    def list_notifications(self, *args, **kwargs):
        raise DataUnavailableError("connection refused")


@pytest.fixture
def client(repository):
    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_clock] = lambda: FixedClock(NOW)
    app.dependency_overrides[get_settings] = lambda: Settings(job_secret=SECRET, max_workers=1)
    yield TestClient(app)
    app.dependency_overrides.clear()


def _store(repository, owner, subject="b1"):
    stored, _ = repository.create_notification(Notification(
        id=None,
        owner=owner,
        type=BUDGET_ALERT,
        title="Budget Alert: Dining",
        message="You've spent 85.0% of your Dining budget",
        subject_id=subject,
        period_key="monthly:2026-09-01@80",
        payload={"threshold": 80},
        created_at=NOW,
    ))
    return stored


# --- Trigger ---

def test_trigger_rejects_missing_or_wrong_secret(client):
    assert client.post("/api/v1/notifications/trigger").status_code == 401
    response = client.post("/api/v1/notifications/trigger", headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}


def test_trigger_runs_the_job(client, seed):
    user = seed.user("ana")
    seed.budget(user, amount=100.0)
    seed.expense(user, 85, date(2026, 9, 2))

    response = client.post("/api/v1/notifications/trigger", headers={"Authorization": f"Bearer {SECRET}"})

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Notification job completed successfully"
    assert body["timestamp"] == NOW.isoformat()
    assert body["report"]["succeeded"] == 1
    assert body["report"]["notifications_created"] == 1


def test_trigger_reports_a_failed_run(client, session_factory):
    app.dependency_overrides[get_repository] = lambda: UnreachableStore(session_factory)

    response = client.post("/api/v1/notifications/trigger", headers={"Authorization": f"Bearer {SECRET}"})

    assert response.status_code == 500
    assert response.json()["error"] == "Failed to run notification job"
    assert response.json()["report"]["state"] == "failed"


def test_trigger_without_configured_secret_is_open(client):
    app.dependency_overrides[get_settings] = lambda: Settings(max_workers=1)

    assert client.post("/api/v1/notifications/trigger").status_code == 200


def test_trigger_status(client):
    response = client.get("/api/v1/notifications/trigger")

    assert response.status_code == 200
    assert response.json()["status"] == "Notification trigger endpoint is active"


# --- Notifications ---

def test_management_requires_a_user(client):
    assert client.get("/api/v1/notifications").status_code == 401


def test_list_and_update_notifications(client, repository, seed):
    user = seed.user("ana")
    headers = {"X-User-Id": user}
    stored = _store(repository, user)
    _store(repository, user, subject="b2")

    listing = client.get("/api/v1/notifications", params={"limit": 1}, headers=headers).json()
    assert listing["pagination"] == {"total": 2, "limit": 1, "offset": 0, "hasMore": True}

    response = client.patch(f"/api/v1/notifications/{stored.id}", json={"read": True}, headers=headers)
    assert response.status_code == 200
    assert response.json()["notification"]["read_at"] == NOW.isoformat()

    unread = client.get("/api/v1/notifications", params={"read": "false"}, headers=headers).json()
    assert [n["subject_id"] for n in unread["notifications"]] == ["b2"]


def test_update_validation(client, repository, seed):
    user = seed.user("ana")
    headers = {"X-User-Id": user}
    stored = _store(repository, user)

    assert client.patch(f"/api/v1/notifications/{stored.id}", json={}, headers=headers).status_code == 400
    assert client.patch("/api/v1/notifications/missing", json={"read": True}, headers=headers).status_code == 404
    assert client.get("/api/v1/notifications", params={"type": "spam"}, headers=headers).status_code == 400
    assert client.get("/api/v1/notifications", params={"limit": 500}, headers=headers).status_code == 422


def test_bulk_operations(client, repository, seed):
    user = seed.user("ana")
    headers = {"X-User-Id": user}
    first = _store(repository, user)
    _store(repository, user, subject="b2")

    assert client.post("/api/v1/notifications/mark-all-read", headers=headers).json()["markedCount"] == 2
    assert client.delete(f"/api/v1/notifications/{first.id}", headers=headers).json() == {
        "deleted": True,
        "id": first.id,
    }
    assert client.delete("/api/v1/notifications/clear-all", headers=headers).json()["deletedCount"] == 1


def test_store_failures_become_500(client, session_factory, seed):
    app.dependency_overrides[get_repository] = lambda: UnreachableStore(session_factory)

    response = client.get("/api/v1/notifications", headers={"X-User-Id": "u1"})

    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error"}


# --- Preferences ---

def test_preferences_round_trip(client, seed):
    user = seed.user("ana")
    headers = {"X-User-Id": user}

    defaults = client.get("/api/v1/notification-preferences", headers=headers).json()
    assert defaults["notificationPreferences"]["budget_thresholds"] == [80, 90, 100]

    response = client.patch(
        "/api/v1/notification-preferences", json={"budget_thresholds": [100, 75]}, headers=headers
    )
    assert response.status_code == 200
    assert response.json()["updatedFields"] == ["budget_thresholds"]
    assert response.json()["notificationPreferences"]["budget_thresholds"] == [75, 100]


def test_invalid_preferences_are_rejected(client, seed):
    headers = {"X-User-Id": seed.user("ana")}

    assert client.patch("/api/v1/notification-preferences", json={}, headers=headers).status_code == 400
    response = client.patch(
        "/api/v1/notification-preferences", json={"budget_thresholds": [0]}, headers=headers
    )
    assert response.status_code == 400


# --- Budgets ---

def test_budget_progress_endpoint(client, seed):
    user = seed.user("ana")
    budget_id = seed.budget(user, amount=500.0)
    seed.expense(user, 300, date(2026, 9, 4))
    headers = {"X-User-Id": user}

    response = client.get(f"/api/v1/budgets/{budget_id}/progress", headers=headers)

    assert response.status_code == 200
    assert response.json()["spent"] == 300
    assert response.json()["percentage"] == 60
    assert client.get("/api/v1/budgets/missing/progress", headers=headers).status_code == 404


def test_negative_budget_is_unprocessable(client, seed):
    user = seed.user("ana")
    budget_id = seed.budget(user, amount=-5.0)

    response = client.get(f"/api/v1/budgets/{budget_id}/progress", headers={"X-User-Id": user})

    assert response.status_code == 422


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
