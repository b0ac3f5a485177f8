from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from fintrack.core.config import settings
from fintrack.features.auth.provider import CredentialAuthProvider
from fintrack.features.entitlements import service
from fintrack.features.entitlements.hub import ProfileHub
from fintrack.features.entitlements.store import SqlProfileStore
from fintrack.features.session.registry import SessionRegistry, get_session_registry
from fintrack.main import app
from fintrack.models.entitlement import SECONDS_PER_DAY

ADMIN_HEADERS = {"X-Admin-Key": "admin-key"}


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_USERNAME", "admin")
    monkeypatch.setattr(settings, "ADMIN_PASSWORD", "admin-pass")
    monkeypatch.setattr(settings, "ADMIN_KEY", "admin-key")
    registry = SessionRegistry(store=SqlProfileStore(ProfileHub()), auth=CredentialAuthProvider(), poll=False)
    app.dependency_overrides[get_session_registry] = lambda: registry
    yield TestClient(app)
    app.dependency_overrides.pop(get_session_registry, None)


def test_admin_routes_require_credentials(client):
    resp = client.get("/api/admin/users")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "admin_unauthorized"

    resp = client.get("/api/admin/users", headers={"X-Admin-Key": "wrong"})
    assert resp.status_code == 401


def test_admin_auth_unconfigured(client, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_KEY", None)
    monkeypatch.setattr(settings, "ADMIN_USERNAME", None)

    resp = client.get("/api/admin/users")

    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "admin_auth_unconfigured"


def test_user_session_is_not_an_admin(client):
    service.create_entitlement("u1", username="alice")
    client.post("/api/auth/sign-up", json={"username": "bob", "password": "secret1"})
    sign_in = client.post("/api/auth/sign-in", json={"username": "bob", "password": "secret1"})
    session_id = sign_in.headers["X-Session-Id"]

    resp = client.get("/api/admin/users", headers={"X-Session-Id": session_id})

    assert resp.status_code == 401


def test_admin_session_lists_users(client):
    service.create_entitlement("u1", username="alice")
    sign_in = client.post("/api/auth/admin/sign-in", json={"username": "admin", "password": "admin-pass"})
    session_id = sign_in.headers["X-Session-Id"]

    resp = client.get("/api/admin/users", headers={"X-Session-Id": session_id})

    assert resp.status_code == 200
    body = resp.json()
    assert [u["username"] for u in body["users"]] == ["alice"]
    assert body["stats"]["total"] == 1


def test_add_and_remove_days(client):
    service.create_entitlement("u1", username="alice")

    added = client.post("/api/admin/users/u1/days/add", json={"days": 10}, headers=ADMIN_HEADERS)
    assert added.status_code == 200
    assert added.json()["access_duration_seconds"] == 40 * SECONDS_PER_DAY

    removed = client.post("/api/admin/users/u1/days/remove", json={"days": 5}, headers=ADMIN_HEADERS)
    assert removed.json()["access_duration_seconds"] == 35 * SECONDS_PER_DAY
    assert removed.json()["revision"] == 3


def test_days_must_be_positive(client):
    service.create_entitlement("u1")

    resp = client.post("/api/admin/users/u1/days/add", json={"days": 0}, headers=ADMIN_HEADERS)

    assert resp.status_code == 422


def test_approval_toggle(client):
    service.create_entitlement("u1")

    assert client.post("/api/admin/users/u1/approve", headers=ADMIN_HEADERS).json()["is_approved"] is True
    assert client.post("/api/admin/users/u1/disapprove", headers=ADMIN_HEADERS).json()["is_approved"] is False


def test_set_expiration_and_duration(client):
    service.create_entitlement("u1")
    target = datetime.now(timezone.utc) + timedelta(days=12)

    resp = client.post("/api/admin/users/u1/expiration", json={"expires_at": target.isoformat()}, headers=ADMIN_HEADERS)
    assert resp.status_code == 200
    seconds = resp.json()["access_duration_seconds"]
    assert 11 * SECONDS_PER_DAY < seconds <= 12 * SECONDS_PER_DAY

    granted_at = datetime(2024, 1, 1, tzinfo=timezone.utc)
    resp = client.put(
        "/api/admin/users/u1/duration",
        json={"seconds": 7 * SECONDS_PER_DAY, "granted_at": granted_at.isoformat()},
        headers=ADMIN_HEADERS,
    )
    record = service.get_entitlement("u1")
    assert record.access_duration_seconds == 7 * SECONDS_PER_DAY
    assert record.granted_at == granted_at


def test_unknown_user_is_404(client):
    resp = client.post("/api/admin/users/ghost/approve", headers=ADMIN_HEADERS)

    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "profile_not_found"


def test_delete_user(client):
    service.create_entitlement("u1")

    resp = client.delete("/api/admin/users/u1", headers=ADMIN_HEADERS)

    assert resp.status_code == 200
    assert client.post("/api/admin/users/u1/approve", headers=ADMIN_HEADERS).status_code == 404
