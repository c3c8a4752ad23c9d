"""Tests for api/routes.py -- HTTP endpoint handlers.

Uses FastAPI TestClient (backed by httpx) with a real gateway over the
scripted engine. No real agent engine is involved.
"""

from collections.abc import Generator

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.routes import router, set_session_gateway
from gateway import SessionGateway
from models.schemas import StoredMessage
from session_registry import SessionRegistry
from tests.conftest import FakeConnection

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def client(gateway: SessionGateway) -> Generator[TestClient, None, None]:
    """Create a FastAPI TestClient wired to the test gateway."""
    app = FastAPI()
    app.include_router(router)
    set_session_gateway(gateway)
    with TestClient(app) as c:
        yield c


# =========================================================================
# Health Check
# =========================================================================


class TestHealthCheck:
    """GET /health."""

    def test_health_returns_200(self, client: TestClient, registry: SessionRegistry) -> None:
        registry.create("S1", FakeConnection())
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["active_sessions"] == 1
        assert data["running_queries"] == 0
        assert data["engine"] == "scripted"
        assert "timestamp" in data


# =========================================================================
# Sessions
# =========================================================================


class TestSessions:
    """GET/DELETE /api/sessions."""

    def test_list_sessions(self, client: TestClient, registry: SessionRegistry) -> None:
        registry.create("S1", FakeConnection("a"))
        registry.create("S2", FakeConnection("b"))

        resp = client.get("/api/sessions")

        assert resp.status_code == 200
        assert {s["session_id"] for s in resp.json()} == {"S1", "S2"}

    def test_get_session_snapshot(self, client: TestClient, registry: SessionRegistry) -> None:
        registry.create("S1", FakeConnection())
        registry.record_thread_id("S1", "thread_a")

        resp = client.get("/api/sessions/S1")

        assert resp.status_code == 200
        data = resp.json()
        assert data["is_connected"] is True
        assert data["is_query_running"] is False
        assert data["current_thread_id"] == "thread_a"

    def test_get_session_not_found(self, client: TestClient) -> None:
        resp = client.get("/api/sessions/missing")
        assert resp.status_code == 404
        assert "not found" in resp.json()["detail"]

    def test_get_history(self, client: TestClient, registry: SessionRegistry) -> None:
        registry.create("S1", FakeConnection())
        registry.add_to_history("S1", StoredMessage(role="user", content="hello", uuid="u1"))

        resp = client.get("/api/sessions/S1/history")

        assert resp.status_code == 200
        data = resp.json()
        assert data["session_id"] == "S1"
        assert data["messages"][0]["content"] == "hello"
        assert data["messages"][0]["uuid"] == "u1"

    def test_get_history_not_found(self, client: TestClient) -> None:
        assert client.get("/api/sessions/missing/history").status_code == 404

    def test_delete_session(self, client: TestClient, registry: SessionRegistry) -> None:
        registry.create("S1", FakeConnection())

        resp = client.delete("/api/sessions/S1")

        assert resp.status_code == 204
        assert not registry.has("S1")

    def test_delete_session_not_found(self, client: TestClient) -> None:
        assert client.delete("/api/sessions/missing").status_code == 404


# =========================================================================
# Application
# =========================================================================


class TestApplication:
    """main.app lifespan wires a working gateway."""

    def test_lifespan_starts_with_echo_engine(self, monkeypatch: pytest.MonkeyPatch) -> None:
        from config import settings
        from main import app

        monkeypatch.setattr(settings, "use_mock_engine", True)
        with TestClient(app) as c:
            data = c.get("/health").json()
            assert data["status"] == "healthy"
            assert data["engine"] == "echo"
            assert c.get("/").json()["health"] == "/health"
