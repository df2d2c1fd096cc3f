"""Persistent mapping from file locator / content hash to remote book identity.

Writes merge into existing rows: a field that is already known is never
replaced by an unknown value coming from a different resolution path.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, fields
from typing import Any, Callable

from readsync.core.storage import isoformat_utc

logger = logging.getLogger(__name__)

SYNTHETIC_LOCATOR_PREFIX = "historical://"

_COLUMNS = "locator, content_hash, remote_book_id, title, author, isbn10, isbn13, last_accessed"


def synthetic_locator(content_hash: str) -> str:
    """Locator for a book that has no file on this device (matched from history)."""
    return f"{SYNTHETIC_LOCATOR_PREFIX}{content_hash}"


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


@dataclass
class IdentityCacheEntry:
    """Cached identity of one local book."""

    locator: str
    content_hash: str | None = None
    remote_book_id: int | None = None
    title: str | None = None
    author: str | None = None
    isbn10: str | None = None
    isbn13: str | None = None
    last_accessed: str | None = None

    @property
    def resolved(self) -> bool:
        return self.remote_book_id is not None

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> IdentityCacheEntry:
        return cls(
            locator=row["locator"],
            content_hash=row["content_hash"],
            remote_book_id=row["remote_book_id"],
            title=row["title"],
            author=row["author"],
            isbn10=row["isbn10"],
            isbn13=row["isbn13"],
            last_accessed=row["last_accessed"],
        )

    def merged_with(self, other: IdentityCacheEntry) -> IdentityCacheEntry:
        """Fill fields this entry lacks from another entry."""
        values = {}
        for f in fields(self):
            mine = getattr(self, f.name)
            values[f.name] = mine if mine is not None else getattr(other, f.name)
        return IdentityCacheEntry(**values)


class IdentityCache:
    """Identity cache backed by the identity_cache table."""

    def __init__(self, conn: sqlite3.Connection, clock: Callable[[], float] = time.time) -> None:
        self._conn = conn
        self._clock = clock
        self._lock = threading.Lock()

    def save(self, entry: IdentityCacheEntry) -> IdentityCacheEntry:
        """Insert or merge an entry keyed by locator, returning the stored row.

        Raises:
            ValueError: If the entry has neither a locator nor a content hash
        """
        content_hash = _blank_to_none(entry.content_hash)
        locator = _blank_to_none(entry.locator)
        if locator is None:
            if content_hash is None:
                raise ValueError("Identity cache entry needs a locator or a content hash")
            locator = synthetic_locator(content_hash)

        now = isoformat_utc(self._clock())
        with self._lock:
            self._conn.execute(
                f"""
                INSERT INTO identity_cache ({_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(locator) DO UPDATE SET
                    content_hash = COALESCE(excluded.content_hash, identity_cache.content_hash),
                    remote_book_id = COALESCE(excluded.remote_book_id, identity_cache.remote_book_id),
                    title = COALESCE(excluded.title, identity_cache.title),
                    author = COALESCE(excluded.author, identity_cache.author),
                    isbn10 = COALESCE(excluded.isbn10, identity_cache.isbn10),
                    isbn13 = COALESCE(excluded.isbn13, identity_cache.isbn13),
                    last_accessed = excluded.last_accessed,
                    updated_at = datetime('now')
                """,
                (
                    locator,
                    content_hash,
                    entry.remote_book_id,
                    _blank_to_none(entry.title),
                    _blank_to_none(entry.author),
                    _blank_to_none(entry.isbn10),
                    _blank_to_none(entry.isbn13),
                    now,
                ),
            )
            self._conn.commit()

        stored = self.get_by_locator(locator)
        assert stored is not None
        return stored

    def get_by_locator(self, locator: str) -> IdentityCacheEntry | None:
        row = self._conn.execute(
            f"SELECT {_COLUMNS} FROM identity_cache WHERE locator = ?", (locator,)
        ).fetchone()
        return IdentityCacheEntry.from_row(row) if row else None

    def get_by_hash(self, content_hash: str) -> IdentityCacheEntry | None:
        """Merged view over every row sharing the hash, resolved rows first."""
        if not content_hash:
            return None
        rows = self._conn.execute(
            f"""
            SELECT {_COLUMNS} FROM identity_cache
            WHERE content_hash = ?
            ORDER BY remote_book_id IS NULL, last_accessed DESC, id DESC
            """,
            (content_hash,),
        ).fetchall()
        if not rows:
            return None
        merged = IdentityCacheEntry.from_row(rows[0])
        for row in rows[1:]:
            merged = merged.merged_with(IdentityCacheEntry.from_row(row))
        return merged

    def get_by_remote_id(self, remote_book_id: int) -> IdentityCacheEntry | None:
        row = self._conn.execute(
            f"""
            SELECT {_COLUMNS} FROM identity_cache
            WHERE remote_book_id = ?
            ORDER BY last_accessed DESC, id DESC
            LIMIT 1
            """,
            (remote_book_id,),
        ).fetchone()
        return IdentityCacheEntry.from_row(row) if row else None

    def find_by_isbn(self, isbn10: str | None = None, isbn13: str | None = None) -> IdentityCacheEntry | None:
        """Find a resolved entry by ISBN, trying ISBN-13 first."""
        for column, value in (("isbn13", isbn13), ("isbn10", isbn10)):
            value = _blank_to_none(value)
            if value is None:
                continue
            row = self._conn.execute(
                f"""
                SELECT {_COLUMNS} FROM identity_cache
                WHERE {column} = ? AND remote_book_id IS NOT NULL
                ORDER BY last_accessed DESC, id DESC
                LIMIT 1
                """,
                (value,),
            ).fetchone()
            if row:
                return IdentityCacheEntry.from_row(row)
        return None

    def set_remote_id(self, content_hash: str, remote_book_id: int) -> int:
        """Attach a remote id to every row carrying the hash. Returns rows updated."""
        with self._lock:
            cur = self._conn.execute(
                """
                UPDATE identity_cache
                SET remote_book_id = ?, last_accessed = ?, updated_at = datetime('now')
                WHERE content_hash = ?
                """,
                (remote_book_id, isoformat_utc(self._clock()), content_hash),
            )
            self._conn.commit()
        return cur.rowcount

    def forget_remote_id(self, content_hash: str) -> int:
        """Drop the remote id after the server reported the book gone."""
        with self._lock:
            cur = self._conn.execute(
                """
                UPDATE identity_cache
                SET remote_book_id = NULL, updated_at = datetime('now')
                WHERE content_hash = ?
                """,
                (content_hash,),
            )
            self._conn.commit()
        if cur.rowcount:
            logger.warning(f"Forgot remote id for hash {content_hash} ({cur.rowcount} rows)")
        return cur.rowcount

    def list_unresolved(self) -> list[IdentityCacheEntry]:
        rows = self._conn.execute(
            f"""
            SELECT {_COLUMNS} FROM identity_cache
            WHERE remote_book_id IS NULL AND content_hash IS NOT NULL
            ORDER BY last_accessed DESC, id DESC
            """
        ).fetchall()
        return [IdentityCacheEntry.from_row(r) for r in rows]

    def record_match(
        self,
        content_hash: str | None,
        remote_book_id: int,
        method: str,
        confidence: float | None = None,
        title: str | None = None,
        author: str | None = None,
    ) -> None:
        """Append to match_history."""
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO match_history (content_hash, remote_book_id, method, confidence, title, author)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (content_hash, remote_book_id, method, confidence, title, author),
            )
            self._conn.commit()

    def match_history(self, limit: int = 50) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT content_hash, remote_book_id, method, confidence, title, author, matched_at
            FROM match_history
            ORDER BY id DESC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
        return [dict(r) for r in rows]

    def stats(self) -> dict[str, int]:
        row = self._conn.execute(
            """
            SELECT COUNT(*),
                   SUM(CASE WHEN remote_book_id IS NOT NULL THEN 1 ELSE 0 END)
            FROM identity_cache
            """
        ).fetchone()
        total = row[0] or 0
        resolved = row[1] or 0
        return {"total": total, "resolved": resolved, "unresolved": total - resolved}

    def clear(self) -> int:
        with self._lock:
            cur = self._conn.execute("DELETE FROM identity_cache")
            self._conn.commit()
        logger.info(f"Cleared identity cache ({cur.rowcount} entries)")
        return cur.rowcount
