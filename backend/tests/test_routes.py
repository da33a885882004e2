"""Tests for api/routes.py -- HTTP endpoint handlers.

Uses FastAPI TestClient (backed by httpx) over a SessionRegistry whose
processes are fakes from conftest. No real processes are spawned.
"""

from collections.abc import Generator
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.routes import router
from session_registry import SessionRegistry
from tests.conftest import FakePtyFactory, app_client, wait_until_sync

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def factory() -> FakePtyFactory:
    return FakePtyFactory()


@pytest.fixture()
def client(
    factory: FakePtyFactory,
) -> Generator[tuple[TestClient, SessionRegistry], None, None]:
    with app_client(factory) as pair:
        yield pair


def _create(client: TestClient, cwd: Path | str) -> dict:
    response = client.post("/api/sessions", json={"cwd": str(cwd)})
    assert response.status_code == 201, response.text
    return response.json()


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class TestHealth:
    """GET /health"""

    def test_health_returns_capacity(
        self, client: tuple[TestClient, SessionRegistry]
    ) -> None:
        http, _ = client
        resp = http.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["active_sessions"] == 0
        assert data["max_sessions"] == 5
        assert "timestamp" in data

    def test_health_unhealthy_without_registry(self) -> None:
        app = FastAPI()
        app.include_router(router)
        with TestClient(app) as http:
            resp = http.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "unhealthy"


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


class TestCreateSession:
    """POST /api/sessions"""

    def test_create_returns_201(
        self, client: tuple[TestClient, SessionRegistry], tmp_path: Path
    ) -> None:
        http, _ = client
        data = _create(http, tmp_path)
        assert data["status"] == "active"
        assert data["cwd"] == str(tmp_path.resolve())
        assert data["waiting"] is False
        assert data["exit_code"] is None
        assert data["websocket_url"] == f"/terminal/{data['id']}"

    def test_create_starts_process_in_directory(
        self,
        client: tuple[TestClient, SessionRegistry],
        factory: FakePtyFactory,
        tmp_path: Path,
    ) -> None:
        http, _ = client
        _create(http, tmp_path)
        assert factory.calls[0]["cwd"] == str(tmp_path.resolve())
        assert factory.calls[0]["argv"] == ["fake-cli"]

    def test_missing_directory_returns_400(
        self, client: tuple[TestClient, SessionRegistry], tmp_path: Path
    ) -> None:
        http, _ = client
        resp = http.post("/api/sessions", json={"cwd": str(tmp_path / "nope")})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Directory does not exist"

    def test_file_path_returns_400(
        self, client: tuple[TestClient, SessionRegistry], tmp_path: Path
    ) -> None:
        http, _ = client
        target = tmp_path / "file.txt"
        target.write_text("x")
        resp = http.post("/api/sessions", json={"cwd": str(target)})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Path is not a directory"

    def test_empty_cwd_returns_422(
        self, client: tuple[TestClient, SessionRegistry]
    ) -> None:
        http, _ = client
        resp = http.post("/api/sessions", json={"cwd": ""})
        assert resp.status_code == 422

    def test_capacity_returns_429(self, tmp_path: Path) -> None:
        with app_client(FakePtyFactory(), max_sessions=1) as (http, _):
            _create(http, tmp_path)
            resp = http.post("/api/sessions", json={"cwd": str(tmp_path)})
            assert resp.status_code == 429

    def test_spawn_failure_returns_500(
        self,
        client: tuple[TestClient, SessionRegistry],
        factory: FakePtyFactory,
        tmp_path: Path,
    ) -> None:
        http, registry = client
        factory.error = FileNotFoundError("fake-cli")
        resp = http.post("/api/sessions", json={"cwd": str(tmp_path)})
        assert resp.status_code == 500
        assert "Failed to create session" in resp.json()["detail"]
        assert registry.list() == []


# ---------------------------------------------------------------------------
# List / Get
# ---------------------------------------------------------------------------


class TestListSessions:
    """GET /api/sessions"""

    def test_list_empty(self, client: tuple[TestClient, SessionRegistry]) -> None:
        http, _ = client
        resp = http.get("/api/sessions")
        assert resp.status_code == 200
        assert resp.json() == []

    def test_list_in_creation_order(
        self, client: tuple[TestClient, SessionRegistry], tmp_path: Path
    ) -> None:
        http, _ = client
        first = _create(http, tmp_path)
        second = _create(http, tmp_path)
        ids = [s["id"] for s in http.get("/api/sessions").json()]
        assert ids == [first["id"], second["id"]]


class TestGetSession:
    """GET /api/sessions/{session_id}"""

    def test_get_existing(
        self, client: tuple[TestClient, SessionRegistry], tmp_path: Path
    ) -> None:
        http, _ = client
        created = _create(http, tmp_path)
        resp = http.get(f"/api/sessions/{created['id']}")
        assert resp.status_code == 200
        assert resp.json()["id"] == created["id"]

    def test_get_reports_exit(
        self,
        client: tuple[TestClient, SessionRegistry],
        factory: FakePtyFactory,
        tmp_path: Path,
    ) -> None:
        http, registry = client
        created = _create(http, tmp_path)
        factory.last.exit(2)
        wait_until_sync(lambda: registry.active_count == 0)

        data = http.get(f"/api/sessions/{created['id']}").json()
        assert data["status"] == "exited"
        assert data["exit_code"] == 2

    def test_get_not_found(self, client: tuple[TestClient, SessionRegistry]) -> None:
        http, _ = client
        resp = http.get("/api/sessions/missing")
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Close
# ---------------------------------------------------------------------------


class TestCloseSession:
    """DELETE /api/sessions/{session_id}"""

    def test_close_existing(
        self, client: tuple[TestClient, SessionRegistry], tmp_path: Path
    ) -> None:
        http, _ = client
        created = _create(http, tmp_path)
        resp = http.delete(f"/api/sessions/{created['id']}")
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "outcome": "graceful"}
        assert http.get(f"/api/sessions/{created['id']}").status_code == 404

    def test_close_twice_returns_404(
        self, client: tuple[TestClient, SessionRegistry], tmp_path: Path
    ) -> None:
        http, _ = client
        created = _create(http, tmp_path)
        http.delete(f"/api/sessions/{created['id']}")
        resp = http.delete(f"/api/sessions/{created['id']}")
        assert resp.status_code == 404

    def test_close_frees_capacity(self, tmp_path: Path) -> None:
        with app_client(FakePtyFactory(), max_sessions=1) as (http, _):
            created = _create(http, tmp_path)
            http.delete(f"/api/sessions/{created['id']}")
            _create(http, tmp_path)


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------


class TestShutdown:
    """POST /api/server/shutdown"""

    def test_shutdown_schedules_signal(
        self, client: tuple[TestClient, SessionRegistry]
    ) -> None:
        http, _ = client
        with patch("api.routes.schedule_shutdown_signal", MagicMock()) as schedule:
            resp = http.post("/api/server/shutdown")
        assert resp.status_code == 200
        assert resp.json()["success"] is True
        schedule.assert_called_once_with()
