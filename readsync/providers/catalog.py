"""Remote catalog/tracking server client.

Every call returns a Result; HTTP failures are classified by status and
never retried here (retrying is the queue's job). The one exception is
the bearer-token flow: a 401/403 drops the cached token, logs in again
and repeats the request exactly once.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from readsync.core.errors import Result, SyncError, SyncErrorKind
from readsync.core.settings import Settings
from readsync.core.token_store import TokenStore

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
MAX_INLINE_ERROR_LENGTH = 500

STATUS_MESSAGES = {
    400: "Bad Request",
    401: "Unauthorized - Invalid credentials",
    403: "Forbidden - Access denied",
    404: "Not Found",
    500: "Internal Server Error",
    502: "Bad Gateway",
    503: "Service Unavailable",
    504: "Gateway Timeout",
}

DUPLICATE_TOKEN_MESSAGE = (
    "Server error: duplicate refresh token. This is a server-side bug; "
    "log out and back in on the server's web interface or restart the server to clear stale tokens."
)


def classify_status(status: int) -> SyncErrorKind:
    """Map an HTTP error status to an error kind."""
    if status == 401:
        return SyncErrorKind.AUTH
    if status == 403:
        return SyncErrorKind.PERMISSION
    if status == 404:
        return SyncErrorKind.NOT_FOUND
    if status >= 500:
        return SyncErrorKind.SERVER
    return SyncErrorKind.REJECTED


def extract_error_message(text: str, status: int) -> str:
    """Best human-readable message from an error response body."""
    try:
        data = json.loads(text) if text else None
    except ValueError:
        data = None

    if isinstance(data, dict):
        if data.get("message"):
            return str(data["message"])
        error = data.get("error")
        if isinstance(error, str) and error:
            return error
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if data.get("detail"):
            return str(data["detail"])

    if text and len(text) < MAX_INLINE_ERROR_LENGTH:
        return text

    return STATUS_MESSAGES.get(status, f"HTTP {status}")


def password_key(password: str) -> str:
    return hashlib.md5(password.encode("utf-8")).hexdigest()


def record_book_id(data: Any) -> int | None:
    """Integer id of a catalog record, or None when the record has no usable id."""
    if not isinstance(data, dict):
        return None
    value = data.get("id")
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    return None


@dataclass
class RemoteBook:
    """Book record as returned by the catalog."""

    id: int
    title: str | None = None
    author: str | None = None
    isbn10: str | None = None
    isbn13: str | None = None
    match_score: float | None = None

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> RemoteBook:
        """Build from a catalog record, lifting nested metadata fields.

        Raises:
            ValueError: If the record has no integer id
        """
        book_id = record_book_id(data)
        if book_id is None:
            raise ValueError(f"Catalog record without a usable id: {data.get('id')!r}")
        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}

        author = data.get("author")
        if not author:
            authors = metadata.get("authors") or data.get("authors")
            if isinstance(authors, list):
                author = ", ".join(str(a) for a in authors if a)
            elif isinstance(authors, str):
                author = authors

        score = data.get("matchScore")
        return cls(
            id=book_id,
            title=data.get("title") or metadata.get("title"),
            author=author or None,
            isbn10=data.get("isbn10") or metadata.get("isbn10"),
            isbn13=data.get("isbn13") or metadata.get("isbn13"),
            match_score=float(score) if score is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn10": self.isbn10,
            "isbn13": self.isbn13,
            "matchScore": self.match_score,
        }


class RemoteClient:
    """Client for the catalog server's book and reading-session API."""

    def __init__(
        self,
        server_url: str,
        username: str = "",
        password: str = "",
        *,
        catalog_username: str = "",
        catalog_password: str = "",
        tokens: TokenStore | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        self._username = username
        self._password = password
        self._catalog_username = catalog_username
        self._catalog_password = catalog_password
        self._tokens = tokens
        self._client = httpx.Client(
            base_url=self.server_url,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        tokens: TokenStore | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> "RemoteClient":
        return cls(
            settings.server_url,
            settings.username,
            settings.password,
            catalog_username=settings.catalog_username,
            catalog_password=settings.catalog_password,
            tokens=tokens,
            timeout=settings.request_timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "RemoteClient":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def has_bearer_credentials(self) -> bool:
        return bool(self._tokens and self._catalog_username and self._catalog_password)

    def _basic_headers(self) -> dict[str, str]:
        if not (self._username and self._password):
            return {}
        return {"x-auth-user": self._username, "x-auth-key": password_key(self._password)}

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Result[Any]:
        """Make one HTTP request and classify the outcome.

        Returns:
            Result holding the decoded JSON body (raw text if the body is not
            JSON, None if empty) or a classified SyncError
        """
        if not self.server_url:
            return Result.fail(SyncErrorKind.CONFIG, "Server URL not configured")

        logger.info(f"{method} {self.server_url}{path}")
        try:
            response = self._client.request(method, path, json=json_body, params=params, headers=headers)
        except httpx.TimeoutException:
            logger.warning(f"{method} {path} timed out")
            return Result.fail(SyncErrorKind.SERVER, "Request timed out")
        except httpx.TransportError as e:
            logger.warning(f"{method} {path} network error: {e}")
            return Result.fail(SyncErrorKind.OFFLINE, f"Network error: {e}")

        status = response.status_code
        logger.debug(f"{method} {path} -> {status} ({len(response.content)} bytes)")

        if 200 <= status < 300:
            if not response.content:
                return Result.success(None)
            try:
                return Result.success(response.json())
            except ValueError:
                return Result.success(response.text)

        message = extract_error_message(response.text, status)
        logger.warning(f"{method} {path} failed: {status} - {message}")
        return Result.failure(SyncError(classify_status(status), message, status))

    def _bearer_request(self, method: str, path: str, params: dict[str, str] | None = None) -> Result[Any]:
        """Request with a cached bearer token, refreshing and retrying once on 401/403."""
        if not self.has_bearer_credentials:
            return Result.fail(SyncErrorKind.CONFIG, "Catalog credentials not configured")
        assert self._tokens is not None

        token = self._token(force_refresh=False)
        if not token.ok:
            return token

        result = self._request(method, path, params=params, headers={"Authorization": f"Bearer {token.value}"})
        if result.ok or result.error.status not in (401, 403):
            return result

        logger.info(f"Bearer token rejected ({result.error.status}), refreshing")
        self._tokens.delete(self._catalog_username)
        token = self._token(force_refresh=True)
        if not token.ok:
            return token

        result = self._request(method, path, params=params, headers={"Authorization": f"Bearer {token.value}"})
        if not result.ok and result.error.status in (401, 403):
            return Result.fail(SyncErrorKind.AUTH, result.error.message, result.error.status)
        return result

    def _token(self, force_refresh: bool) -> Result[str]:
        assert self._tokens is not None
        try:
            return Result.success(
                self._tokens.get_or_refresh(
                    self._catalog_username,
                    self._catalog_password,
                    self._login_or_raise,
                    force_refresh=force_refresh,
                )
            )
        except SyncError as e:
            return Result.failure(e)

    def _login_or_raise(self, username: str, password: str) -> str:
        result = self.login(username, password)
        if not result.ok:
            raise result.error
        return result.value

    def login(self, username: str, password: str) -> Result[str]:
        """Exchange credentials for a bearer token."""
        result = self._request("POST", "/api/v1/auth/login", json_body={"username": username, "password": password})
        if result.ok:
            if isinstance(result.value, dict) and result.value.get("accessToken"):
                return Result.success(result.value["accessToken"])
            return Result.fail(SyncErrorKind.SERVER, "Login response did not contain a token")

        error = result.error
        if "Duplicate entry" in error.message and "uq_refresh_token" in error.message:
            logger.warning("Login hit a duplicate refresh token on the server")
            return Result.fail(SyncErrorKind.SERVER, DUPLICATE_TOKEN_MESSAGE, error.status)
        # A failed login is an authentication failure whatever the status
        if error.status in (400, 401, 403):
            return Result.fail(SyncErrorKind.AUTH, error.message, error.status)
        return result

    def check_health(self) -> Result[bool]:
        """Reachability check; any status below 500 counts as reachable."""
        result = self._request("GET", "/api/health")
        if result.ok or (result.error.status is not None and result.error.status < 500):
            return Result.success(True)
        return result

    def test_auth(self) -> Result[str]:
        """Validate configuration, then check the sync credentials with the server."""
        if not self.server_url:
            return Result.fail(SyncErrorKind.CONFIG, "Server URL not configured")
        if not self._username:
            return Result.fail(SyncErrorKind.CONFIG, "Username not configured")
        if not self._password:
            return Result.fail(SyncErrorKind.CONFIG, "Password not configured")

        result = self._request("GET", "/api/koreader/users/auth", headers=self._basic_headers())
        if result.ok:
            return Result.success("Authentication successful")
        error = result.error
        if error.status is not None:
            return Result.fail(error.kind, f"HTTP {error.status}: {error.message}", error.status)
        return result

    def get_book_by_hash(self, content_hash: str) -> Result[RemoteBook]:
        path = f"/api/v1/books/by-hash/{content_hash}"
        if self.has_bearer_credentials:
            result = self._bearer_request("GET", path)
        else:
            result = self._request("GET", path, headers=self._basic_headers())
        if not result.ok:
            return result
        if record_book_id(result.value) is None:
            return Result.fail(SyncErrorKind.SERVER, "Malformed book response")
        book = RemoteBook.from_json(result.value)
        logger.info(f"Hash {content_hash} resolved to book {book.id}")
        return Result.success(book)

    def search_books(self, title: str | None = None, isbn: str | None = None) -> Result[list[RemoteBook]]:
        """Search the catalog by ISBN or fuzzy title. Results keep the server's ranking."""
        if isbn:
            params = {"isbn": isbn}
        elif title:
            params = {"title": title}
        else:
            return Result.fail(SyncErrorKind.REJECTED, "Search needs a title or an ISBN")

        result = self._bearer_request("GET", "/api/v1/books", params=params)
        if not result.ok:
            return result
        items = result.value
        if isinstance(items, dict) and isinstance(items.get("content"), list):
            items = items["content"]
        if not isinstance(items, list):
            return Result.fail(SyncErrorKind.SERVER, "Malformed search response")

        books = [RemoteBook.from_json(item) for item in items if record_book_id(item) is not None]
        if len(books) < len(items):
            logger.warning(f"Catalog search {params} skipped {len(items) - len(books)} records without an id")
        logger.info(f"Catalog search {params} returned {len(books)} matches")
        return Result.success(books)

    def submit_session(self, payload: dict[str, Any]) -> Result[Any]:
        return self._request(
            "POST", "/api/v1/reading-sessions", json_body=payload, headers=self._basic_headers()
        )

    def submit_session_batch(self, book_id: int, book_type: str, sessions: list[dict[str, Any]]) -> Result[Any]:
        if not sessions:
            raise ValueError("Batch upload needs at least one session")
        payload = {"bookId": book_id, "bookType": book_type or "EPUB", "sessions": sessions}
        logger.info(f"Submitting batch of {len(sessions)} sessions for book {book_id}")
        return self._request(
            "POST", "/api/v1/reading-sessions/batch", json_body=payload, headers=self._basic_headers()
        )
