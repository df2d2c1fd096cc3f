"""Cached bearer tokens, one live token per username."""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

TOKEN_LIFETIME_SECONDS = 28 * 24 * 3600
# A cached token is reused only while more than this remains
REFRESH_MARGIN_SECONDS = 24 * 3600


@dataclass
class BearerToken:
    username: str
    token: str
    expires_at: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> BearerToken:
        return cls(username=row["username"], token=row["token"], expires_at=row["expires_at"])


class TokenStore:
    """Bearer token cache backed by the bearer_tokens table."""

    def __init__(self, conn: sqlite3.Connection, clock: Callable[[], float] = time.time) -> None:
        self._conn = conn
        self._clock = clock
        self._lock = threading.Lock()

    def get(self, username: str) -> BearerToken | None:
        row = self._conn.execute(
            "SELECT username, token, expires_at FROM bearer_tokens WHERE username = ?",
            (username,),
        ).fetchone()
        return BearerToken.from_row(row) if row else None

    def save(self, username: str, token: str) -> BearerToken:
        """Replace the user's token; the new one expires in 28 days."""
        entry = BearerToken(
            username=username,
            token=token,
            expires_at=int(self._clock()) + TOKEN_LIFETIME_SECONDS,
        )
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM bearer_tokens WHERE username = ?", (username,))
            self._conn.execute(
                "INSERT INTO bearer_tokens (username, token, expires_at) VALUES (?, ?, ?)",
                (entry.username, entry.token, entry.expires_at),
            )
        logger.info(f"Cached bearer token for {username}")
        return entry

    def delete(self, username: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM bearer_tokens WHERE username = ?", (username,))
            self._conn.commit()

    def cleanup_expired(self) -> int:
        with self._lock:
            cur = self._conn.execute(
                "DELETE FROM bearer_tokens WHERE expires_at <= ?", (int(self._clock()),)
            )
            self._conn.commit()
        if cur.rowcount:
            logger.info(f"Removed {cur.rowcount} expired bearer tokens")
        return cur.rowcount

    def is_fresh(self, entry: BearerToken) -> bool:
        return entry.expires_at - self._clock() > REFRESH_MARGIN_SECONDS

    def get_or_refresh(
        self,
        username: str,
        password: str,
        login: Callable[[str, str], str],
        force_refresh: bool = False,
    ) -> str:
        """Return a usable token, logging in only when the cached one is stale.

        Args:
            username: Catalog username
            password: Catalog password
            login: Callable performing the remote login, returning the token
            force_refresh: Ignore the cached token

        Raises:
            SyncError: Propagated from ``login``
        """
        if not force_refresh:
            cached = self.get(username)
            if cached and self.is_fresh(cached):
                return cached.token

        logger.info(f"Requesting new bearer token for {username}")
        token = login(username, password)
        self.save(username, token)
        return token
