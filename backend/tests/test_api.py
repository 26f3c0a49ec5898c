"""Tests for the database lifecycle HTTP routes."""
import pytest
from fastapi.testclient import TestClient

pytestmark = pytest.mark.unit

from main import app
from tests.mock_helpers import FakeReader

COUNTS = {"user_profiles": 4, "schools": 1, "school_users": 4, "content": 12}


@pytest.fixture
def client():
    # no context manager: the lifespan (and its background loop) stays off
    return TestClient(app)


@pytest.fixture
def reader():
    return FakeReader(COUNTS)


@pytest.fixture
def monitor(make_monitor, reader):
    mon = make_monitor(reader)
    app.state.db_monitor = mon
    yield mon
    del app.state.db_monitor


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_status_404_before_first_record(client, monitor):
    response = client.get("/admin/db-lifecycle/status")
    assert response.status_code == 404


def test_run_then_status(client, monitor):
    response = client.post("/admin/db-lifecycle/run")
    assert response.status_code == 200
    tick = response.json()
    assert tick["snapshot"]["status"] == "healthy"
    assert tick["snapshot"]["tables"] == COUNTS
    assert tick["backup_reason"] == "no_backup_history"
    assert tick["backup"]["size_bytes"] > 0

    response = client.get("/admin/db-lifecycle/status")
    assert response.status_code == 200
    body = response.json()
    assert body["id"] == tick["record_id"]
    assert body["status"] == "initialized"
    assert body["last_known_state"]["tables"] == COUNTS


def test_history(client, monitor):
    client.post("/admin/db-lifecycle/run")
    client.post("/admin/db-lifecycle/run")

    response = client.get("/admin/db-lifecycle/history", params={"limit": 2})
    assert response.status_code == 200
    records = response.json()["records"]
    assert [r["status"] for r in records] == ["initialized", "initialized"]

    everything = client.get("/admin/db-lifecycle/history").json()["records"]
    assert sorted(r["status"] for r in everything) == ["backup", "initialized", "initialized"]


def test_history_rejects_bad_limit(client, monitor):
    assert client.get("/admin/db-lifecycle/history", params={"limit": 0}).status_code == 422


def test_health_does_not_record(client, monitor, sqlite_store):
    response = client.get("/admin/db-lifecycle/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["tables"] == COUNTS
    assert sqlite_store.history() == []


def test_health_unreachable_is_503(client, monitor, reader):
    reader.down = True
    response = client.get("/admin/db-lifecycle/health")
    assert response.status_code == 503
    assert "connection refused" in response.json()["detail"]


def test_monitor_state(client, monitor):
    client.post("/admin/db-lifecycle/run")
    body = client.get("/admin/db-lifecycle/monitor").json()
    assert body["running"] is False
    assert body["ticks"] == 1
    assert body["last_tick"]["snapshot"]["status"] == "healthy"


def test_monitor_state_without_monitor(client):
    body = client.get("/admin/db-lifecycle/monitor").json()
    assert body == {"running": False, "phase": "idle", "ticks": 0, "last_tick": None}
