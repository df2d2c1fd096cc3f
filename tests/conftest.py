"""Shared fixtures: migrated in-memory DB, fake clock, fake catalog server, fake host."""

import json
import sqlite3
from dataclasses import replace

import httpx
import pytest

from readsync.core.settings import Settings
from readsync.core.storage import run_migrations
from readsync.core.token_store import TokenStore
from readsync.providers.catalog import RemoteClient

SERVER_URL = "http://catalog.test"

BASE_SETTINGS = Settings(
    db_path=":memory:",
    statistics_db_path="",
    server_url=SERVER_URL,
    username="reader",
    password="secret",
    catalog_username="",
    catalog_password="",
    request_timeout=10.0,
    session_detection_mode="duration",
    min_duration_seconds=30,
    min_pages=5,
    progress_decimal_places=2,
    manual_sync_only=False,
    force_push_on_suspend=False,
    secure_logs=False,
    log_file="",
    log_level="INFO",
)


def make_settings(**overrides) -> Settings:
    return replace(BASE_SETTINGS, **overrides)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeServer:
    """httpx MockTransport handler with canned responses per (method, path).

    Responses registered for a route are served in order; the last one
    repeats. Unknown routes answer 404.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._routes: dict[tuple[str, str], list] = {}

    def set(self, method: str, path: str, *responses) -> None:
        self._routes[(method, path)] = list(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        responses = self._routes.get((request.method, request.url.path))
        if not responses:
            return httpx.Response(404, json={"message": "Not Found"})
        response = responses.pop(0) if len(responses) > 1 else responses[0]
        if callable(response):
            return response(request)
        if isinstance(response, Exception):
            raise response
        status, body = response
        return httpx.Response(status, json=body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    @staticmethod
    def body(request: httpx.Request):
        return json.loads(request.content)


class FakeHost:
    def __init__(self) -> None:
        self.progress = 10.0
        self.location = "10"
        self.locator = None
        self.online = True

    def current_position(self):
        return self.progress, self.location

    def current_locator(self):
        return self.locator

    def is_online(self):
        return self.online


@pytest.fixture
def db_conn():
    """In-memory SQLite connection with the full schema."""
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    conn.row_factory = sqlite3.Row
    run_migrations(conn)
    return conn


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def client(server, db_conn, clock):
    """Client with basic-hash credentials only."""
    c = RemoteClient(SERVER_URL, "reader", "secret", tokens=TokenStore(db_conn, clock), transport=server.transport)
    yield c
    c.close()


@pytest.fixture
def bearer_client(server, db_conn, clock):
    """Client that also has catalog (bearer) credentials."""
    c = RemoteClient(
        SERVER_URL,
        "reader",
        "secret",
        catalog_username="librarian",
        catalog_password="hunter2",
        tokens=TokenStore(db_conn, clock),
        transport=server.transport,
    )
    yield c
    c.close()


@pytest.fixture
def host():
    return FakeHost()


def create_statistics_db(path, books):
    """books: list of (id, title, md5, [(start_time, page, total_pages), ...])"""
    conn = sqlite3.connect(path)
    conn.execute("CREATE TABLE book (id INTEGER PRIMARY KEY, title TEXT, authors TEXT, md5 TEXT)")
    conn.execute(
        "CREATE TABLE page_stat_data (id_book INTEGER, page INTEGER, start_time INTEGER, duration INTEGER, total_pages INTEGER)"
    )
    for book_id, title, md5, stats in books:
        conn.execute("INSERT INTO book VALUES (?, ?, ?, ?)", (book_id, title, "Someone", md5))
        for start_time, page, total in stats:
            conn.execute(
                "INSERT INTO page_stat_data VALUES (?, ?, ?, ?, ?)", (book_id, page, start_time, 45, total)
            )
    conn.commit()
    conn.close()
