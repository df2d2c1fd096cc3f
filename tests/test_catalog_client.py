"""Tests for the remote catalog client."""

import httpx
import pytest

from conftest import SERVER_URL, FakeServer
from readsync.core.errors import SyncErrorKind
from readsync.providers.catalog import (
    DUPLICATE_TOKEN_MESSAGE,
    RemoteBook,
    RemoteClient,
    classify_status,
    extract_error_message,
    password_key,
    record_book_id,
)

SEARCH = "/api/v1/books"
LOGIN = "/api/v1/auth/login"


class TestErrorClassification:
    @pytest.mark.parametrize(
        "status,kind",
        [
            (401, SyncErrorKind.AUTH),
            (403, SyncErrorKind.PERMISSION),
            (404, SyncErrorKind.NOT_FOUND),
            (409, SyncErrorKind.REJECTED),
            (500, SyncErrorKind.SERVER),
            (503, SyncErrorKind.SERVER),
        ],
    )
    def test_classify_status(self, status, kind):
        assert classify_status(status) == kind

    def test_message_field(self):
        assert extract_error_message('{"message": "Book gone"}', 404) == "Book gone"

    def test_error_string_and_object(self):
        assert extract_error_message('{"error": "nope"}', 400) == "nope"
        assert extract_error_message('{"error": {"message": "nested"}}', 400) == "nested"

    def test_detail_field(self):
        assert extract_error_message('{"detail": "bad field"}', 422) == "bad field"

    def test_short_text_used_verbatim(self):
        assert extract_error_message("Gateway exploded", 502) == "Gateway exploded"

    def test_long_text_falls_back_to_status_phrase(self):
        assert extract_error_message("x" * 600, 503) == "Service Unavailable"
        assert extract_error_message("", 418) == "HTTP 418"


class TestRemoteBook:
    def test_metadata_fields_are_lifted(self):
        book = RemoteBook.from_json(
            {
                "id": "17",
                "title": "Dune",
                "metadata": {"isbn10": "0441013597", "isbn13": "9780441013593", "authors": ["Frank Herbert"]},
                "matchScore": 0.93,
            }
        )
        assert book.id == 17
        assert book.isbn10 == "0441013597"
        assert book.isbn13 == "9780441013593"
        assert book.author == "Frank Herbert"
        assert book.match_score == 0.93

    def test_record_without_usable_id(self):
        assert record_book_id({"id": None}) is None
        assert record_book_id({"id": True}) is None
        assert record_book_id({"title": "Dune"}) is None
        assert record_book_id({"id": " 12 "}) == 12
        with pytest.raises(ValueError):
            RemoteBook.from_json({"id": None})


class TestBasicRequests:
    """Calls authenticated with x-auth headers."""

    def test_submit_session_sends_basic_headers(self, client, server):
        server.set("POST", "/api/v1/reading-sessions", (201, {"id": 1}))
        result = client.submit_session({"bookId": 3})

        assert result.ok
        request = server.calls("POST", "/api/v1/reading-sessions")[0]
        assert request.headers["x-auth-user"] == "reader"
        assert request.headers["x-auth-key"] == password_key("secret") == "5ebe2294ecd0e0f08eab7690d2a6ee69"
        assert FakeServer.body(request) == {"bookId": 3}

    def test_batch_payload(self, client, server):
        server.set("POST", "/api/v1/reading-sessions/batch", (200, None))
        client.submit_session_batch(3, "PDF", [{"startTime": "a"}, {"startTime": "b"}])
        body = FakeServer.body(server.calls("POST", "/api/v1/reading-sessions/batch")[0])
        assert body == {"bookId": 3, "bookType": "PDF", "sessions": [{"startTime": "a"}, {"startTime": "b"}]}

    def test_batch_rejects_empty(self, client):
        with pytest.raises(ValueError):
            client.submit_session_batch(3, "EPUB", [])

    def test_get_book_by_hash(self, client, server):
        server.set("GET", "/api/v1/books/by-hash/abc", (200, {"id": 5, "title": "T", "metadata": {"isbn13": "978"}}))
        result = client.get_book_by_hash("abc")
        assert result.value.id == 5
        assert result.value.isbn13 == "978"

    def test_book_with_null_id_is_server_error(self, client, server):
        server.set("GET", "/api/v1/books/by-hash/abc", (200, {"id": None, "title": "Dune"}))
        assert client.get_book_by_hash("abc").kind == SyncErrorKind.SERVER

    def test_get_book_by_hash_not_found(self, client, server):
        result = client.get_book_by_hash("missing")
        assert not result.ok
        assert result.kind == SyncErrorKind.NOT_FOUND
        assert result.error.status == 404

    def test_malformed_book_is_server_error(self, client, server):
        server.set("GET", "/api/v1/books/by-hash/abc", lambda r: httpx.Response(200, text="<html>"))
        result = client.get_book_by_hash("abc")
        assert result.kind == SyncErrorKind.SERVER

    def test_non_json_success_returns_text(self, client, server):
        server.set("POST", "/api/v1/reading-sessions", lambda r: httpx.Response(200, text="OK"))
        assert client.submit_session({}).value == "OK"

    def test_connection_error_is_offline(self, client, server):
        server.set("POST", "/api/v1/reading-sessions", httpx.ConnectError("refused"))
        result = client.submit_session({})
        assert result.kind == SyncErrorKind.OFFLINE
        assert result.retriable

    def test_timeout_is_server_error(self, client, server):
        server.set("POST", "/api/v1/reading-sessions", httpx.ReadTimeout("slow"))
        assert client.submit_session({}).kind == SyncErrorKind.SERVER

    def test_missing_server_url_is_config_error(self, server):
        c = RemoteClient("", "reader", "secret", transport=server.transport)
        assert c.submit_session({}).kind == SyncErrorKind.CONFIG
        assert server.requests == []


class TestHealthAndAuth:
    def test_health_counts_4xx_as_reachable(self, client, server):
        server.set("GET", "/api/health", (404, {}))
        assert client.check_health().ok

    def test_health_5xx_is_failure(self, client, server):
        server.set("GET", "/api/health", (503, {}))
        assert client.check_health().kind == SyncErrorKind.SERVER

    def test_auth_success(self, client, server):
        server.set("GET", "/api/koreader/users/auth", (200, {"username": "reader"}))
        assert client.test_auth().value == "Authentication successful"

    def test_auth_failure_includes_status(self, client, server):
        server.set("GET", "/api/koreader/users/auth", (401, {"message": "bad key"}))
        result = client.test_auth()
        assert result.kind == SyncErrorKind.AUTH
        assert result.error.message == "HTTP 401: bad key"

    def test_auth_validates_configuration_first(self, server):
        c = RemoteClient(SERVER_URL, "reader", "", transport=server.transport)
        result = c.test_auth()
        assert result.kind == SyncErrorKind.CONFIG
        assert server.requests == []


class TestBearerRequests:
    """Catalog search with cached bearer tokens."""

    def test_search_logs_in_once_and_reuses_token(self, bearer_client, server):
        server.set("POST", LOGIN, (200, {"accessToken": "tok-1"}))
        server.set("GET", SEARCH, (200, [{"id": 1, "title": "Dune"}]))

        first = bearer_client.search_books(title="Dune")
        second = bearer_client.search_books(title="Dune")

        assert first.ok and second.ok
        assert first.value[0].title == "Dune"
        assert len(server.calls("POST", LOGIN)) == 1
        searches = server.calls("GET", SEARCH)
        assert all(r.headers["Authorization"] == "Bearer tok-1" for r in searches)
        assert searches[0].url.params["title"] == "Dune"

    def test_401_refreshes_and_retries_once(self, bearer_client, server):
        server.set("POST", LOGIN, (200, {"accessToken": "old"}), (200, {"accessToken": "new"}))
        server.set("GET", SEARCH, (401, {"message": "expired"}), (200, []))

        result = bearer_client.search_books(isbn="9780441013593")

        assert result.ok
        assert len(server.calls("POST", LOGIN)) == 2
        searches = server.calls("GET", SEARCH)
        assert [r.headers["Authorization"] for r in searches] == ["Bearer old", "Bearer new"]

    def test_second_rejection_is_auth_failure(self, bearer_client, server):
        server.set("POST", LOGIN, (200, {"accessToken": "tok"}))
        server.set("GET", SEARCH, (403, {"message": "forbidden"}))

        result = bearer_client.search_books(title="Dune")

        assert result.kind == SyncErrorKind.AUTH
        assert len(server.calls("GET", SEARCH)) == 2
        assert len(server.calls("POST", LOGIN)) == 2

    def test_failed_login_is_auth_failure(self, bearer_client, server):
        server.set("POST", LOGIN, (401, {"message": "wrong password"}))
        result = bearer_client.search_books(title="Dune")
        assert result.kind == SyncErrorKind.AUTH
        assert server.calls("GET", SEARCH) == []

    def test_duplicate_refresh_token_message(self, bearer_client, server):
        server.set(
            "POST",
            LOGIN,
            (500, {"message": "Duplicate entry 'x' for key 'uq_refresh_token'"}),
        )
        result = bearer_client.login("librarian", "hunter2")
        assert result.error.message == DUPLICATE_TOKEN_MESSAGE

    def test_search_without_catalog_credentials(self, client, server):
        assert client.search_books(title="Dune").kind == SyncErrorKind.CONFIG
        assert server.requests == []

    def test_search_needs_title_or_isbn(self, bearer_client, server):
        result = bearer_client.search_books()
        assert result.kind == SyncErrorKind.REJECTED
        assert server.requests == []

    def test_search_skips_records_without_id(self, bearer_client, server):
        server.set("POST", LOGIN, (200, {"accessToken": "tok"}))
        server.set("GET", SEARCH, (200, {"content": [{"id": None, "title": "Ghost"}, {"id": 5, "title": "Dune"}]}))
        result = bearer_client.search_books(title="Dune")
        assert [b.id for b in result.value] == [5]

    def test_hash_lookup_uses_bearer_when_configured(self, bearer_client, server):
        server.set("POST", LOGIN, (200, {"accessToken": "tok"}))
        server.set("GET", "/api/v1/books/by-hash/abc", (200, {"id": 9}))
        assert bearer_client.get_book_by_hash("abc").value.id == 9
        request = server.calls("GET", "/api/v1/books/by-hash/abc")[0]
        assert request.headers["Authorization"] == "Bearer tok"
