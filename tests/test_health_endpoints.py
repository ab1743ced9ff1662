from fastapi.testclient import TestClient

from main import create_app
from tests.conftest import auth_headers


def test_health(monkeypatch):
    monkeypatch.setenv("GIT_SHA", "test-sha")
    monkeypatch.setenv("ENV", "test")
    client = TestClient(create_app())
    r = client.get("/health")
    assert r.status_code == 200, r.text
    assert r.json() == {"ok": True, "env": "test", "git_sha": "test-sha"}


def test_healthz_memory_backend(harness):
    r = harness.client.get("/healthz")
    assert r.status_code == 200, r.text
    data = r.json()
    assert data["ok"] is True
    assert data["db_ok"] is True
    assert data["db_error"] is None


def test_readyz_memory_backend(harness):
    r = harness.client.get("/readyz")
    assert r.status_code == 200, r.text
    data = r.json()
    assert data["ready"] is True
    assert data["migrations_ok"] is True
    assert data["migration_revision"] == "0002_webhook_events"


def test_readyz_reports_db_failure(harness):
    harness.services.db_ping = lambda: (False, "OperationalError: connection refused")
    harness.services.migrations_ok = lambda: True
    data = harness.client.get("/readyz").json()
    assert data["ready"] is False
    assert data["db_ok"] is False
    assert data["migrations_ok"] is False
    assert "connection refused" in data["db_error"]


def test_readyz_reports_missing_migrations(harness):
    harness.services.db_ping = lambda: (True, None)
    harness.services.migrations_ok = lambda: False
    data = harness.client.get("/readyz").json()
    assert data["ready"] is False
    assert data["db_ok"] is True
    assert data["migrations_ok"] is False


def test_payment_routes_unavailable_before_startup():
    # lifespan has not run, so nothing is wired yet
    client = TestClient(create_app())
    r = client.post(
        "/v1/payments/pay-now",
        json={"billParticipantId": "x"},
        headers=auth_headers("00000000-0000-0000-0000-000000000001"),
    )
    assert r.status_code == 503, r.text
    assert r.json()["detail"] == "SERVICE_NOT_READY"
