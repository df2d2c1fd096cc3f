"""Tests for the HTTP host adapter"""

import pytest
from fastapi.testclient import TestClient

from conftest import create_statistics_db, make_settings
from readsync import main
from readsync.core.storage import get_db
from readsync.main import app, init_engine

BOOK_BYTES = (b"Call me Ishmael.\n" * 3000)[:40000]


@pytest.fixture
def book(tmp_path):
    path = tmp_path / "Moby Dick.epub"
    path.write_bytes(BOOK_BYTES)
    return str(path)


@pytest.fixture
def api(tmp_path, server):
    def start(**overrides):
        settings = make_settings(
            db_path=str(tmp_path / "data" / "readsync.db"),
            session_detection_mode="pages",
            min_pages=5,
            **overrides,
        )
        init_engine(settings, transport=server.transport)
        return TestClient(app)

    yield start
    main.get_engine().client.close()
    get_db().close()


class TestHostEvents:
    def test_read_offline_then_sync(self, api, book, server):
        client = api()

        r = client.post("/events/document-opened", params={"locator": book, "progress": 10, "location": "10", "online": False})
        assert r.json()["ok"] is True
        assert r.json()["session"]["title"] == "Moby Dick"

        r = client.post("/events/document-closed", params={"progress": 30, "location": "30"})
        assert r.status_code == 200
        session_id = r.json()["result"]

        pending = client.get("/pending").json()
        assert pending["count"] == 1
        assert pending["sessions"][0]["id"] == session_id
        assert server.requests == []

        r = client.post("/sync")
        assert r.json()["result"]["offline"] is True

    def test_short_read_is_discarded(self, api, book):
        client = api()
        client.post("/events/document-opened", params={"locator": book, "location": "10", "online": False})

        r = client.post("/events/document-closed", params={"location": "12"})

        assert r.json()["ok"] is True
        assert "pages read" in r.json()["discarded"]
        assert client.get("/pending").json()["count"] == 0

    def test_untracked_document(self, api, tmp_path):
        client = api()
        r = client.post("/events/document-opened", params={"locator": str(tmp_path / "missing.epub")})
        assert r.json() == {"ok": False, "error": "Document not tracked"}

    def test_suspend_then_resume(self, api, book):
        client = api()
        client.post("/events/document-opened", params={"locator": book, "location": "10", "online": False})

        r = client.post("/events/suspend", params={"location": "40"})
        assert r.json()["ok"] is True

        r = client.post("/events/resume")
        assert r.json()["session"]["locator"] == book
        assert client.get("/stats").json()["pending_sessions"] == 1

    def test_clear_pending(self, api, book):
        client = api()
        client.post("/events/document-opened", params={"locator": book, "location": "10", "online": False})
        client.post("/events/document-closed", params={"location": "30"})

        assert client.delete("/pending").json() == {"deleted": 1}
        assert client.get("/pending").json()["count"] == 0


class TestUserActions:
    def test_connection_test_without_server(self, api):
        client = api(server_url="")

        r = client.post("/connection/test")

        assert r.status_code == 400
        assert r.json()["error"] == "config"

    def test_connection_test_auth_failure(self, api, server):
        server.set("GET", "/api/koreader/users/auth", (401, {"message": "Unauthorized"}))
        client = api()

        r = client.post("/connection/test")

        assert r.status_code == 401
        assert r.json()["message"] == "HTTP 401: Unauthorized"

    def test_extract_without_statistics(self, api):
        r = api().post("/historical/extract")
        assert r.status_code == 400

    def test_extract_runs_in_background(self, api, tmp_path):
        path = str(tmp_path / "statistics.sqlite3")
        create_statistics_db(path, [(1, "Dune.epub", "h1", [(1000, 1, 100), (1060, 4, 100)])])
        client = api(statistics_db_path=path)

        r = client.post("/historical/extract")
        assert r.json()["ok"] is True

        assert client.get("/historical/stats").json()["total"] == 1
        assert client.get("/stats").json()["state"] == "idle"

    def test_unknown_proposal(self, api):
        client = api()

        assert client.get("/historical/proposals").json() == {"proposals": []}
        assert client.post("/historical/proposals/7/skip").status_code == 404
        r = client.post("/historical/proposals/7/select", params={"book_id": 3})
        assert r.status_code == 404
        assert r.json()["error"] == "not_found"

    def test_resync_offline_host(self, api, book):
        client = api()
        client.post("/events/document-opened", params={"locator": book, "online": False})

        r = client.post("/historical/resync")

        assert r.status_code == 503
