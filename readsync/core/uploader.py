"""Batch upload engine.

Every caller (pending sync, historical resync, re-match sync, sync after
matching) uploads through ``BatchUploader.upload`` so the 404/403
handling stays identical everywhere.

Per chunk:
- 2xx: every session synced
- 404: ambiguous (batch endpoint missing or book gone); each session is
  submitted on its own: 2xx synced, 404 unmatched, anything else failed
- 403: whole chunk failed, no per-session fallback
- other: whole chunk failed
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, Sequence

from readsync.core.errors import SyncErrorKind
from readsync.core.segmenter import format_duration, round_progress
from readsync.providers.catalog import RemoteClient

logger = logging.getLogger(__name__)

BATCH_SIZE = 100


class SessionOutcome(str, Enum):
    """Final state of one session after an upload attempt."""

    SYNCED = "synced"
    UNMATCHED = "unmatched"  # Server no longer knows the book
    FAILED = "failed"  # Left for a later pass


class UploadableSession(Protocol):
    id: int | None
    book_type: str
    start_time: str
    end_time: str
    duration_seconds: int
    start_progress: float
    end_progress: float
    progress_delta: float
    start_location: str
    end_location: str


class OutcomeSink(Protocol):
    def synced(self, session: Any) -> None: ...

    def unmatched(self, session: Any) -> None: ...

    def failed(self, session: Any) -> None: ...


@dataclass
class UploadReport:
    """Counts from one or more upload calls."""

    synced: int = 0
    unmatched: int = 0
    failed: int = 0
    remote_calls: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.synced + self.unmatched + self.failed

    def record(self, outcome: SessionOutcome) -> None:
        if outcome == SessionOutcome.SYNCED:
            self.synced += 1
        elif outcome == SessionOutcome.UNMATCHED:
            self.unmatched += 1
        else:
            self.failed += 1

    def merge(self, other: UploadReport) -> None:
        self.synced += other.synced
        self.unmatched += other.unmatched
        self.failed += other.failed
        self.remote_calls += other.remote_calls
        self.errors.extend(other.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "synced": self.synced,
            "unmatched": self.unmatched,
            "failed": self.failed,
            "remote_calls": self.remote_calls,
            "errors": self.errors,
        }


def session_payload(session: UploadableSession, decimal_places: int) -> dict[str, Any]:
    """Wire form of a session inside a batch (book id and type live on the batch)."""
    return {
        "startTime": session.start_time,
        "endTime": session.end_time,
        "durationSeconds": session.duration_seconds,
        "durationFormatted": format_duration(session.duration_seconds),
        "startProgress": round_progress(session.start_progress or 0.0, decimal_places),
        "endProgress": round_progress(session.end_progress or 0.0, decimal_places),
        "progressDelta": round_progress(session.progress_delta or 0.0, decimal_places),
        "startLocation": session.start_location,
        "endLocation": session.end_location,
    }


def chunked(items: Sequence[Any], size: int) -> list[Sequence[Any]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class BatchUploader:
    """Pushes sessions of one book to the server and reports per-session outcomes."""

    def __init__(self, client: RemoteClient, decimal_places: int = 2, batch_size: int = BATCH_SIZE) -> None:
        self.client = client
        self.decimal_places = decimal_places
        self.batch_size = batch_size

    def _single_payload(self, book_id: int, book_type: str, session: UploadableSession) -> dict[str, Any]:
        return {"bookId": book_id, "bookType": book_type, **session_payload(session, self.decimal_places)}

    def _submit_one(self, book_id: int, book_type: str, session: UploadableSession, report: UploadReport) -> SessionOutcome:
        result = self.client.submit_session(self._single_payload(book_id, book_type, session))
        report.remote_calls += 1
        if result.ok:
            return SessionOutcome.SYNCED
        if result.kind == SyncErrorKind.NOT_FOUND:
            logger.warning(f"Book {book_id} not found on server, session {session.id} needs re-matching")
            return SessionOutcome.UNMATCHED
        report.errors.append(result.error.message)
        return SessionOutcome.FAILED

    def _apply(self, sink: OutcomeSink, session: Any, outcome: SessionOutcome, report: UploadReport) -> None:
        report.record(outcome)
        if outcome == SessionOutcome.SYNCED:
            sink.synced(session)
        elif outcome == SessionOutcome.UNMATCHED:
            sink.unmatched(session)
        else:
            sink.failed(session)

    def upload(
        self,
        book_id: int,
        book_type: str,
        sessions: Sequence[UploadableSession],
        sink: OutcomeSink,
    ) -> UploadReport:
        """Upload all sessions of one book.

        Args:
            book_id: Remote book id shared by every session
            book_type: Server book type (EPUB, PDF, CBX)
            sessions: Sessions to upload
            sink: Receives exactly one outcome per session

        Returns:
            UploadReport with per-outcome counts and the number of remote calls
        """
        report = UploadReport()
        if not sessions:
            return report
        book_type = book_type or "EPUB"

        if len(sessions) == 1:
            session = sessions[0]
            self._apply(sink, session, self._submit_one(book_id, book_type, session, report), report)
            return report

        for chunk in chunked(sessions, self.batch_size):
            payload = [session_payload(s, self.decimal_places) for s in chunk]
            result = self.client.submit_session_batch(book_id, book_type, payload)
            report.remote_calls += 1

            if result.ok:
                logger.info(f"Batch of {len(chunk)} sessions for book {book_id} synced")
                for session in chunk:
                    self._apply(sink, session, SessionOutcome.SYNCED, report)
                continue

            error = result.error
            if error.kind == SyncErrorKind.NOT_FOUND:
                logger.warning(f"Batch for book {book_id} returned 404, falling back to single uploads")
                for session in chunk:
                    self._apply(sink, session, self._submit_one(book_id, book_type, session, report), report)
                continue

            if error.status == 403:
                logger.error(f"Batch for book {book_id} forbidden: {error.message}")
            else:
                logger.warning(f"Batch for book {book_id} failed: {error.message}")
            report.errors.append(error.message)
            for session in chunk:
                self._apply(sink, session, SessionOutcome.FAILED, report)

        return report
