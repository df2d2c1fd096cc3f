"""Read-only access to the host reader's page statistics database.

Expected layout (KOReader ``statistics.sqlite3``):
    book(id, title, authors, md5)
    page_stat_data(id_book, start_time, duration, total_pages, page)
"""

from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass

from readsync.core.segmenter import PageObservation

logger = logging.getLogger(__name__)


@dataclass
class SourceBook:
    """A book as the host knows it."""

    id: int
    title: str
    authors: str | None = None
    md5: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> SourceBook:
        return cls(
            id=int(row["id"]),
            title=str(row["title"] or ""),
            authors=row["authors"] or None,
            md5=row["md5"] or None,
        )


class StatisticsReader:
    """Opens the statistics database read-only; the host stays its only writer."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._conn: sqlite3.Connection | None = None

    @property
    def available(self) -> bool:
        return bool(self.path) and os.path.exists(self.path)

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(f"file:{self.path}?mode=ro", uri=True, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def list_books(self) -> list[SourceBook]:
        rows = self._connection().execute("SELECT id, title, authors, md5 FROM book ORDER BY id").fetchall()
        return [SourceBook.from_row(r) for r in rows]

    def find_book_by_hash(self, md5: str) -> SourceBook | None:
        row = self._connection().execute(
            "SELECT id, title, authors, md5 FROM book WHERE md5 = ? LIMIT 1", (md5,)
        ).fetchone()
        return SourceBook.from_row(row) if row else None

    def observations(self, book_id: int) -> list[PageObservation]:
        """Page statistics for one book, oldest first. Rows without a timestamp are skipped."""
        rows = self._connection().execute(
            """
            SELECT start_time, duration, total_pages, page
            FROM page_stat_data
            WHERE id_book = ?
            ORDER BY start_time
            """,
            (book_id,),
        ).fetchall()

        observations = []
        for row in rows:
            try:
                timestamp = int(row["start_time"])
            except (TypeError, ValueError):
                logger.warning(f"Skipping page stat with bad timestamp {row['start_time']!r} for book {book_id}")
                continue
            observations.append(
                PageObservation(
                    timestamp=timestamp,
                    duration=int(row["duration"] or 0),
                    page=int(row["page"] or 0),
                    total_pages=row["total_pages"],
                )
            )
        return observations
