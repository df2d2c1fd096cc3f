"""Durable pending/historical session queue.

Pending rows wait for upload and are retried on every sync pass with no
cap; an unresolvable row stays until it uploads or the user clears the
queue. A successful upload moves the row into historical_sessions in one
transaction. Historical rows are unique per (source_book_id, start_time,
end_time), so repeating an archive or an extraction never duplicates.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from readsync.core.errors import StorageError
from readsync.core.identity_cache import IdentityCache
from readsync.core.segmenter import ReadingSession
from readsync.core.storage import isoformat_utc

logger = logging.getLogger(__name__)

# Sessions handled per sync pass
PAGE_SIZE = 100
# source_book_id reserved for sessions archived from live tracking
LIVE_SOURCE_BOOK_ID = 0
LIVE_SESSION_TITLE = "Live Session"

_SESSION_COLUMNS = (
    "book_id, book_hash, book_type, start_time, end_time, duration_seconds, "
    "start_progress, end_progress, progress_delta, start_location, end_location"
)


@dataclass
class PendingSession:
    """A validated session waiting for upload."""

    id: int
    book_id: int | None
    book_hash: str
    book_type: str
    start_time: str
    end_time: str
    duration_seconds: int
    start_progress: float
    end_progress: float
    progress_delta: float
    start_location: str
    end_location: str
    created_at: str
    retry_count: int = 0
    last_retry_at: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> PendingSession:
        return cls(
            id=row["id"],
            book_id=row["book_id"],
            book_hash=row["book_hash"],
            book_type=row["book_type"],
            start_time=row["start_time"],
            end_time=row["end_time"],
            duration_seconds=row["duration_seconds"],
            start_progress=row["start_progress"],
            end_progress=row["end_progress"],
            progress_delta=row["progress_delta"],
            start_location=row["start_location"],
            end_location=row["end_location"],
            created_at=row["created_at"],
            retry_count=row["retry_count"],
            last_retry_at=row["last_retry_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class HistoricalSession:
    """An archived live session or one reconstructed from page statistics."""

    source_book_id: int
    source_book_title: str
    book_type: str
    start_time: str
    end_time: str
    duration_seconds: int
    start_progress: float
    end_progress: float
    progress_delta: float
    start_location: str
    end_location: str
    book_hash: str | None = None
    book_id: int | None = None
    matched: bool = False
    synced: bool = False
    id: int | None = None

    @classmethod
    def from_reading_session(
        cls,
        session: ReadingSession,
        source_book_id: int,
        source_book_title: str,
        book_type: str,
        book_hash: str | None = None,
        book_id: int | None = None,
    ) -> HistoricalSession:
        return cls(
            source_book_id=source_book_id,
            source_book_title=source_book_title,
            book_type=book_type,
            start_time=isoformat_utc(session.start_time),
            end_time=isoformat_utc(session.end_time),
            duration_seconds=session.duration_seconds,
            start_progress=session.start_progress,
            end_progress=session.end_progress,
            progress_delta=session.progress_delta,
            start_location=session.start_location,
            end_location=session.end_location,
            book_hash=book_hash,
            book_id=book_id,
            matched=book_id is not None,
        )

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> HistoricalSession:
        return cls(
            id=row["id"],
            source_book_id=row["source_book_id"],
            source_book_title=row["source_book_title"],
            book_id=row["book_id"],
            book_hash=row["book_hash"],
            book_type=row["book_type"],
            start_time=row["start_time"],
            end_time=row["end_time"],
            duration_seconds=row["duration_seconds"],
            start_progress=row["start_progress"],
            end_progress=row["end_progress"],
            progress_delta=row["progress_delta"],
            start_location=row["start_location"],
            end_location=row["end_location"],
            matched=bool(row["matched"]),
            synced=bool(row["synced"]),
        )


@dataclass
class HistoricalBook:
    """Historical sessions grouped by the book they came from."""

    source_book_id: int
    title: str
    book_hash: str | None
    session_count: int
    book_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


class SessionQueue:
    """Pending and historical session tables."""

    def __init__(self, conn: sqlite3.Connection, clock: Callable[[], float] = time.time) -> None:
        self._conn = conn
        self._clock = clock
        self._lock = threading.Lock()

    # Pending sessions

    def enqueue(
        self,
        session: ReadingSession,
        book_hash: str,
        book_type: str,
        book_id: int | None = None,
    ) -> int:
        """Persist a finished session and return its id.

        Raises:
            StorageError: If the row could not be written
        """
        try:
            with self._lock, self._conn:
                cur = self._conn.execute(
                    f"""
                    INSERT INTO pending_sessions ({_SESSION_COLUMNS}, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        book_id,
                        book_hash,
                        book_type,
                        isoformat_utc(session.start_time),
                        isoformat_utc(session.end_time),
                        session.duration_seconds,
                        session.start_progress,
                        session.end_progress,
                        session.progress_delta,
                        session.start_location,
                        session.end_location,
                        isoformat_utc(self._clock()),
                    ),
                )
        except sqlite3.Error as e:
            logger.error(f"Failed to queue session for {book_hash}: {e}")
            raise StorageError(f"Could not save session: {e}") from e

        logger.info(f"Queued session {cur.lastrowid} for book {book_id or book_hash}")
        return cur.lastrowid

    def get(self, session_id: int) -> PendingSession | None:
        row = self._conn.execute("SELECT * FROM pending_sessions WHERE id = ?", (session_id,)).fetchone()
        return PendingSession.from_row(row) if row else None

    def list_pending(self, limit: int = PAGE_SIZE) -> list[PendingSession]:
        """Oldest pending sessions first."""
        rows = self._conn.execute(
            "SELECT * FROM pending_sessions ORDER BY created_at ASC, id ASC LIMIT ?",
            (limit,),
        ).fetchall()
        return [PendingSession.from_row(r) for r in rows]

    def count(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM pending_sessions").fetchone()[0]

    def increment_retry(self, session_id: int) -> None:
        with self._lock:
            self._conn.execute(
                """
                UPDATE pending_sessions
                SET retry_count = retry_count + 1, last_retry_at = ?
                WHERE id = ?
                """,
                (isoformat_utc(self._clock()), session_id),
            )
            self._conn.commit()

    def set_book_id(self, session_id: int, book_id: int | None) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE pending_sessions SET book_id = ? WHERE id = ?", (book_id, session_id)
            )
            self._conn.commit()

    def archive_and_remove(self, session_id: int) -> bool:
        """Move an uploaded pending session into history in a single transaction.

        Re-archiving a session that is already in history is a no-op on the
        historical side, so a retry after a crash cannot duplicate it.

        Returns:
            True if the pending row existed and was removed
        """
        with self._lock, self._conn:
            self._conn.execute(
                f"""
                INSERT OR IGNORE INTO historical_sessions (
                    source_book_id, source_book_title, {_SESSION_COLUMNS}, matched, synced
                )
                SELECT ?,
                       COALESCE(
                           (SELECT c.title FROM identity_cache c
                            WHERE c.content_hash = p.book_hash AND c.title IS NOT NULL
                            LIMIT 1),
                           ?
                       ),
                       p.book_id, p.book_hash, p.book_type, p.start_time, p.end_time,
                       p.duration_seconds, p.start_progress, p.end_progress, p.progress_delta,
                       p.start_location, p.end_location, 1, 1
                FROM pending_sessions p
                WHERE p.id = ?
                """,
                (LIVE_SOURCE_BOOK_ID, LIVE_SESSION_TITLE, session_id),
            )
            cur = self._conn.execute("DELETE FROM pending_sessions WHERE id = ?", (session_id,))
        return cur.rowcount > 0

    def clear_pending(self) -> int:
        with self._lock:
            cur = self._conn.execute("DELETE FROM pending_sessions")
            self._conn.commit()
        logger.info(f"Cleared {cur.rowcount} pending sessions")
        return cur.rowcount

    # Historical sessions

    def add_historical(self, sessions: list[HistoricalSession]) -> int:
        """Insert sessions, skipping ones already present. Returns the number inserted."""
        inserted = 0
        with self._lock, self._conn:
            for s in sessions:
                cur = self._conn.execute(
                    f"""
                    INSERT OR IGNORE INTO historical_sessions (
                        source_book_id, source_book_title, {_SESSION_COLUMNS}, matched, synced
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        s.source_book_id,
                        s.source_book_title,
                        s.book_id,
                        s.book_hash,
                        s.book_type,
                        s.start_time,
                        s.end_time,
                        s.duration_seconds,
                        s.start_progress,
                        s.end_progress,
                        s.progress_delta,
                        s.start_location,
                        s.end_location,
                        int(s.matched),
                        int(s.synced),
                    ),
                )
                inserted += cur.rowcount
        return inserted

    def get_historical(self, session_id: int) -> HistoricalSession | None:
        row = self._conn.execute("SELECT * FROM historical_sessions WHERE id = ?", (session_id,)).fetchone()
        return HistoricalSession.from_row(row) if row else None

    def has_historical(self) -> bool:
        return self._conn.execute("SELECT 1 FROM historical_sessions LIMIT 1").fetchone() is not None

    def historical_stats(self) -> dict[str, int]:
        row = self._conn.execute(
            """
            SELECT COUNT(*),
                   SUM(CASE WHEN matched = 1 THEN 1 ELSE 0 END),
                   SUM(CASE WHEN book_id IS NULL THEN 1 ELSE 0 END),
                   SUM(CASE WHEN synced = 1 THEN 1 ELSE 0 END)
            FROM historical_sessions
            """
        ).fetchone()
        return {
            "total": row[0] or 0,
            "matched": row[1] or 0,
            "unmatched": row[2] or 0,
            "synced": row[3] or 0,
        }

    def _books(self, where: str) -> list[HistoricalBook]:
        rows = self._conn.execute(
            f"""
            SELECT source_book_id, MAX(source_book_title) AS title, book_hash,
                   COUNT(*) AS session_count, MAX(book_id) AS book_id
            FROM historical_sessions
            WHERE {where}
            GROUP BY source_book_id, book_hash
            ORDER BY MIN(id)
            """
        ).fetchall()
        return [
            HistoricalBook(
                source_book_id=r["source_book_id"],
                title=r["title"] or "",
                book_hash=r["book_hash"],
                session_count=r["session_count"],
                book_id=r["book_id"],
            )
            for r in rows
        ]

    def unmatched_books(self) -> list[HistoricalBook]:
        return self._books("book_id IS NULL")

    def matched_unsynced_books(self) -> list[HistoricalBook]:
        return self._books("matched = 1 AND synced = 0 AND book_id IS NOT NULL")

    def sessions_for_book(
        self,
        source_book_id: int,
        book_hash: str | None = None,
        unsynced_only: bool = False,
    ) -> list[HistoricalSession]:
        sql = "SELECT * FROM historical_sessions WHERE source_book_id = ?"
        params: list[Any] = [source_book_id]
        if book_hash is not None:
            sql += " AND book_hash = ?"
            params.append(book_hash)
        if unsynced_only:
            sql += " AND synced = 0"
        sql += " ORDER BY start_time, id"
        return [HistoricalSession.from_row(r) for r in self._conn.execute(sql, params).fetchall()]

    def mark_book_matched(self, source_book_id: int, book_id: int, book_hash: str | None = None) -> int:
        """Assign a remote id to every session of a source book."""
        sql = "UPDATE historical_sessions SET book_id = ?, matched = 1 WHERE source_book_id = ?"
        params: list[Any] = [book_id, source_book_id]
        if book_hash is not None:
            sql += " AND book_hash = ?"
            params.append(book_hash)
        with self._lock:
            cur = self._conn.execute(sql, params)
            self._conn.commit()
        return cur.rowcount

    def mark_synced(self, session_id: int) -> None:
        with self._lock:
            self._conn.execute("UPDATE historical_sessions SET synced = 1 WHERE id = ?", (session_id,))
            self._conn.commit()

    def mark_unmatched(self, session_id: int) -> None:
        """Queue a session for re-matching after the server no longer knows its book."""
        with self._lock:
            self._conn.execute(
                "UPDATE historical_sessions SET matched = 0, synced = 0, book_id = NULL WHERE id = ?",
                (session_id,),
            )
            self._conn.commit()

    def synced_sessions(self) -> list[HistoricalSession]:
        rows = self._conn.execute(
            "SELECT * FROM historical_sessions WHERE synced = 1 AND book_id IS NOT NULL ORDER BY book_id, start_time, id"
        ).fetchall()
        return [HistoricalSession.from_row(r) for r in rows]

    def matched_unsynced_sessions(self) -> list[HistoricalSession]:
        rows = self._conn.execute(
            """
            SELECT * FROM historical_sessions
            WHERE matched = 1 AND synced = 0 AND book_id IS NOT NULL
            ORDER BY book_id, start_time, id
            """
        ).fetchall()
        return [HistoricalSession.from_row(r) for r in rows]


class PendingSink:
    """Applies upload outcomes to pending sessions."""

    def __init__(self, queue: SessionQueue, cache: IdentityCache) -> None:
        self.queue = queue
        self.cache = cache

    def synced(self, session: PendingSession) -> None:
        self.queue.archive_and_remove(session.id)

    def unmatched(self, session: PendingSession) -> None:
        # The id is stale; the next pass resolves the hash again
        self.queue.set_book_id(session.id, None)
        self.cache.forget_remote_id(session.book_hash)
        self.queue.increment_retry(session.id)

    def failed(self, session: PendingSession) -> None:
        self.queue.increment_retry(session.id)


class HistoricalSink:
    """Applies upload outcomes to historical sessions."""

    def __init__(self, queue: SessionQueue) -> None:
        self.queue = queue

    def synced(self, session: HistoricalSession) -> None:
        self.queue.mark_synced(session.id)

    def unmatched(self, session: HistoricalSession) -> None:
        self.queue.mark_unmatched(session.id)

    def failed(self, session: HistoricalSession) -> None:
        pass
