"""Session sync engine.

The engine reacts to host events (document opened/closed, device
suspended/resumed), turns reading activity into queued sessions and
drains the queue through the batch uploader. It runs on a single logical
thread: long operations advance one chunk per task-queue tick, and an
operation started while the engine is busy returns without doing work.
"""

from __future__ import annotations

import itertools
import logging
import os
import sqlite3
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from readsync.core.errors import Result, StorageError, SyncError, SyncErrorKind
from readsync.core.fingerprint import content_fingerprint, detect_book_type
from readsync.core.identity_cache import (
    SYNTHETIC_LOCATOR_PREFIX,
    IdentityCache,
    IdentityCacheEntry,
    synthetic_locator,
)
from readsync.core.resolver import IdentityResolver, MatchMethod, Resolution
from readsync.core.segmenter import ActiveSession, close_session, reconstruct_sessions
from readsync.core.session_queue import (
    PAGE_SIZE,
    HistoricalBook,
    HistoricalSession,
    HistoricalSink,
    PendingSink,
    SessionQueue,
)
from readsync.core.settings import Settings
from readsync.core.tasks import EngineState, TaskQueue
from readsync.core.token_store import TokenStore
from readsync.core.uploader import BatchUploader, UploadReport
from readsync.providers.catalog import RemoteBook, RemoteClient
from readsync.providers.statistics import SourceBook, StatisticsReader

logger = logging.getLogger(__name__)

# Books reconstructed per extraction tick
EXTRACT_CHUNK_SIZE = 20


class ReaderHost(Protocol):
    """What the engine needs from the reading application."""

    def current_position(self) -> tuple[float, str]:
        """Current (progress percent, location) of the open document."""
        ...

    def current_locator(self) -> str | None:
        """Path of the open document, None when nothing is open."""
        ...

    def is_online(self) -> bool:
        ...


@dataclass
class SyncReport(UploadReport):
    """Outcome of one pending-queue sync pass."""

    resolved: int = 0
    unresolved: int = 0
    offline: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "resolved": self.resolved,
            "unresolved": self.unresolved,
            "offline": self.offline,
        }


@dataclass
class ExtractionProgress:
    books_total: int = 0
    books_done: int = 0
    sessions_found: int = 0
    sessions_inserted: int = 0
    books_matched: int = 0
    done: bool = False
    error: str | None = None

    def fail(self, message: str) -> None:
        self.error = message

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class MatchProposal:
    """Title-search candidates waiting for the user to pick one."""

    id: int
    book: HistoricalBook
    candidates: list[RemoteBook]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_book_id": self.book.source_book_id,
            "title": self.book.title,
            "book_hash": self.book.book_hash,
            "session_count": self.book.session_count,
            "candidates": [c.to_dict() for c in self.candidates],
        }


@dataclass
class MatchProgress:
    auto_synced_books: int = 0
    matched_books: int = 0
    proposed_books: int = 0
    unmatched_books: int = 0
    upload: UploadReport = field(default_factory=UploadReport)
    done: bool = False
    error: str | None = None

    def fail(self, message: str) -> None:
        self.error = message

    def to_dict(self) -> dict[str, Any]:
        return {
            "auto_synced_books": self.auto_synced_books,
            "matched_books": self.matched_books,
            "proposed_books": self.proposed_books,
            "unmatched_books": self.unmatched_books,
            "upload": self.upload.to_dict(),
            "done": self.done,
            "error": self.error,
        }


def search_title(title: str) -> str:
    """Title used for catalog search: file extension dropped."""
    root, ext = os.path.splitext(title)
    if ext.lower() in (".epub", ".pdf", ".cbz", ".cbr", ".djvu", ".mobi", ".fb2"):
        return root
    return title


class SyncEngine:
    """Implements the host session events and every user-invoked sync action."""

    def __init__(
        self,
        settings: Settings,
        conn: sqlite3.Connection,
        client: RemoteClient,
        host: ReaderHost,
        *,
        statistics: StatisticsReader | None = None,
        clock: Callable[[], float] = time.time,
        tasks: TaskQueue | None = None,
    ) -> None:
        self.settings = settings
        self.client = client
        self.host = host
        self.statistics = statistics
        self.clock = clock
        self.tasks = tasks or TaskQueue()

        self.cache = IdentityCache(conn, clock)
        self.queue = SessionQueue(conn, clock)
        self.resolver = IdentityResolver(self.cache, client)
        self.uploader = BatchUploader(client, settings.progress_decimal_places)

        self.state = EngineState.IDLE
        self.active: ActiveSession | None = None
        self.proposals: OrderedDict[int, MatchProposal] = OrderedDict()
        self.extraction: ExtractionProgress | None = None
        self.matching: MatchProgress | None = None
        self._proposal_ids = itertools.count(1)

        TokenStore(conn, clock).cleanup_expired()

    # State guard

    def _enter(self, state: EngineState) -> bool:
        if self.state != EngineState.IDLE:
            logger.info(f"Skipping {state.value}: engine is {self.state.value}")
            return False
        self.state = state
        return True

    def _leave(self) -> None:
        self.state = EngineState.IDLE

    def _schedule_step(self, name: str, fn: Callable[[], None], on_error: Callable[[str], None]) -> None:
        """Schedule one chunk; any failure ends the operation and frees the engine."""

        def run() -> None:
            try:
                fn()
            except (sqlite3.Error, StorageError) as e:
                logger.error(f"{name} failed: {e}")
                on_error(str(e))
                self._leave()
            except Exception as e:
                logger.exception(f"{name} failed unexpectedly: {e}")
                on_error(f"Unexpected error: {e}")
                self._leave()

        self.tasks.schedule(name, run)

    # Session events

    def on_document_opened(self, locator: str) -> ActiveSession | None:
        if self.active is not None:
            self.end_session(silent=True, force_queue=True)
        return self.begin_session(locator)

    def on_document_closed(self) -> Result[int]:
        return self.end_session(silent=False, force_queue=False)

    def on_suspend(self) -> Result[int]:
        result = self.end_session(silent=True, force_queue=True)
        if self.settings.force_push_on_suspend:
            logger.info("Pushing pending sessions before suspend")
            self.sync_pending(silent=True)
        return result

    def on_resume(self) -> ActiveSession | None:
        if not self.settings.manual_sync_only:
            self.sync_pending(silent=True)
            if self.host.is_online():
                self.resolve_unmatched_books()

        locator = self.host.current_locator()
        if locator and self.active is None:
            return self.begin_session(locator)
        return self.active

    # Live sessions

    def _source_book(self, content_hash: str) -> SourceBook | None:
        if not self.statistics or not self.statistics.available:
            return None
        try:
            return self.statistics.find_book_by_hash(content_hash)
        except sqlite3.Error as e:
            logger.warning(f"Statistics lookup for {content_hash} failed: {e}")
            return None

    def begin_session(self, locator: str) -> ActiveSession | None:
        """Start tracking the open document. Identity resolution is best effort."""
        progress, location = self.host.current_position()
        entry = self.cache.get_by_locator(locator)

        content_hash = entry.content_hash if entry else None
        if not content_hash and not locator.startswith(SYNTHETIC_LOCATOR_PREFIX):
            try:
                content_hash = content_fingerprint(locator)
            except OSError as e:
                logger.warning(f"Cannot fingerprint {locator}: {e}")
        if not content_hash:
            logger.warning(f"Not tracking {locator}: no content hash")
            return None

        source = self._source_book(content_hash)
        title = (
            (source.title if source and source.title else None)
            or (entry.title if entry else None)
            or os.path.splitext(os.path.basename(locator))[0]
        )

        book_id = entry.remote_book_id if entry else None
        if book_id is None:
            resolution = self.resolver.resolve(content_hash, online=self.host.is_online(), locator=locator)
            if resolution.ok:
                book_id = resolution.value.book_id
            else:
                logger.info(f"Book for {locator} not resolved yet: {resolution.error.message}")

        self.cache.save(IdentityCacheEntry(locator=locator, content_hash=content_hash, title=title))

        self.active = ActiveSession(
            locator=locator,
            title=title,
            book_type=detect_book_type(locator),
            start_time=self.clock(),
            start_progress=progress,
            start_location=location,
            content_hash=content_hash,
            resolved_book_id=book_id,
            source_book_id=source.id if source else None,
        )
        logger.info(f"Session started for {title} at {progress:.1f}% (book {book_id})")
        return self.active

    def end_session(self, silent: bool = False, force_queue: bool = False) -> Result[int]:
        """Close the active session and queue it if it is long enough.

        The queue write happens regardless of connectivity. Unless
        ``force_queue`` is set or sync is manual-only, a sync pass follows.

        Returns:
            Result with the pending session id; a VALIDATION failure when the
            session was discarded; a STORAGE failure when it could not be saved
        """
        if self.active is None:
            return Result.success(None)
        active, self.active = self.active, None

        progress, location = self.host.current_position()
        closed = close_session(active, self.clock(), progress, location, self.settings)
        if not closed.ok:
            logger.info(f"Session for {active.title} discarded: {closed.error.message}")
            return closed

        book_id = active.resolved_book_id
        if book_id is None:
            cached = self.cache.get_by_hash(active.content_hash)
            book_id = cached.remote_book_id if cached else None

        try:
            session_id = self.queue.enqueue(closed.value, active.content_hash, active.book_type, book_id)
        except StorageError as e:
            logger.error(f"Session for {active.title} lost: {e.message}")
            return Result.failure(e)

        log = logger.debug if silent else logger.info
        log(f"Session {session_id} saved: {closed.value.duration_seconds}s, {closed.value.pages_read} pages")

        if not force_queue and not self.settings.manual_sync_only:
            self.sync_pending(silent=silent)
        return Result.success(session_id)

    # Pending sync

    def sync_pending(self, silent: bool = False) -> Result[SyncReport]:
        """Upload up to one page of pending sessions.

        Rows without a book id are resolved first; rows that stay unresolved
        get their retry count bumped and remain queued.
        """
        if not self._enter(EngineState.SYNCING):
            return Result.success(None)
        try:
            return Result.success(self._sync_pending())
        except (StorageError, sqlite3.Error) as e:
            logger.error(f"Sync pass aborted: {e}")
            return Result.failure(e if isinstance(e, SyncError) else StorageError(str(e)))
        finally:
            self._leave()

    def _sync_pending(self) -> SyncReport:
        report = SyncReport()
        pending = self.queue.list_pending(PAGE_SIZE)
        if not pending:
            return report

        online = self.host.is_online()
        groups: dict[tuple[int, str], list] = {}
        for session in pending:
            book_id = session.book_id
            if book_id is None:
                resolution = self.resolver.resolve(session.book_hash, online=online)
                if resolution.ok:
                    book_id = resolution.value.book_id
                    self.queue.set_book_id(session.id, book_id)
                    session.book_id = book_id
                    report.resolved += 1
                elif online:
                    logger.warning(f"Pending session {session.id} unresolved: {resolution.error.message}")
                    self.queue.increment_retry(session.id)
                    report.unresolved += 1
                    continue
                else:
                    report.unresolved += 1
                    continue
            groups.setdefault((book_id, session.book_type), []).append(session)

        if not online:
            logger.info(f"Offline, {len(pending)} pending sessions left queued")
            report.offline = True
            return report

        sink = PendingSink(self.queue, self.cache)
        for (book_id, book_type), sessions in groups.items():
            report.merge(self.uploader.upload(book_id, book_type, sessions, sink))

        logger.info(
            f"Sync pass: {report.synced} synced, {report.failed} failed, "
            f"{report.unmatched} unmatched, {report.unresolved} unresolved"
        )
        return report

    def resolve_unmatched_books(self) -> Result[int]:
        """Look up every cached book without a remote id by its hash."""
        if not self.host.is_online():
            return Result.fail(SyncErrorKind.OFFLINE, "Offline")
        if not self._enter(EngineState.MATCHING):
            return Result.success(0)
        resolved = 0
        try:
            for entry in self.cache.list_unresolved():
                result = self.client.get_book_by_hash(entry.content_hash)
                if result.ok:
                    self.resolver.accept(entry.content_hash, result.value, MatchMethod.HASH, locator=entry.locator)
                    resolved += 1
                elif result.kind == SyncErrorKind.OFFLINE:
                    break
        finally:
            self._leave()
        if resolved:
            logger.info(f"Resolved {resolved} cached books")
        return Result.success(resolved)

    # Historical extraction

    def extract_historical(self) -> Result[ExtractionProgress]:
        """Rebuild sessions from the host's page statistics, a chunk of books per tick."""
        if not self.statistics or not self.statistics.available:
            return Result.fail(SyncErrorKind.CONFIG, "Statistics database not found")
        if not self._enter(EngineState.SCANNING):
            return Result.success(self.extraction)

        try:
            books = self.statistics.list_books()
        except sqlite3.Error as e:
            self._leave()
            return Result.failure(StorageError(f"Cannot read statistics database: {e}"))

        progress = ExtractionProgress(books_total=len(books))
        self.extraction = progress
        logger.info(f"Extracting sessions for {len(books)} books")
        self._schedule_step("extract:0", lambda: self._extract_chunk(books, 0, progress), progress.fail)
        return Result.success(progress)

    def _extract_chunk(self, books: list[SourceBook], start: int, progress: ExtractionProgress) -> None:
        for book in books[start:start + EXTRACT_CHUNK_SIZE]:
            self._extract_book(book, progress)
            progress.books_done += 1

        next_start = start + EXTRACT_CHUNK_SIZE
        if next_start < len(books):
            self._schedule_step(
                f"extract:{next_start}",
                lambda: self._extract_chunk(books, next_start, progress),
                progress.fail,
            )
            return

        progress.done = True
        self._leave()
        logger.info(
            f"Extraction done: {progress.sessions_found} sessions found, "
            f"{progress.sessions_inserted} new, {progress.books_matched} books matched"
        )

    def _extract_book(self, book: SourceBook, progress: ExtractionProgress) -> None:
        sessions = reconstruct_sessions(self.statistics.observations(book.id))
        if not sessions:
            return

        locator = synthetic_locator(book.md5) if book.md5 else None
        resolution = self.resolver.resolve_cached(book.md5, locator=locator)
        book_id = resolution.book_id if resolution else None
        book_type = detect_book_type(book.title)

        rows = [
            HistoricalSession.from_reading_session(s, book.id, book.title, book_type, book.md5, book_id)
            for s in sessions
        ]
        progress.sessions_found += len(rows)
        progress.sessions_inserted += self.queue.add_historical(rows)
        if book_id is not None:
            progress.books_matched += 1

    # Historical matching

    def match_historical(self) -> Result[MatchProgress]:
        """Sync already-matched books, then match the rest one book per tick.

        Exact cache/ISBN/hash matches are accepted and uploaded; title-search
        candidates become proposals for the user.
        """
        if not self._enter(EngineState.MATCHING):
            return Result.success(self.matching)

        progress = MatchProgress()
        self.matching = progress
        # Unmatched books are proposed again by this run
        self.proposals.clear()
        books = self.queue.matched_unsynced_books()
        logger.info(f"Matching: {len(books)} matched books to sync first")
        self._schedule_step("match:sync:0", lambda: self._auto_sync_step(books, 0, progress), progress.fail)
        return Result.success(progress)

    def _auto_sync_step(self, books: list[HistoricalBook], index: int, progress: MatchProgress) -> None:
        if index < len(books):
            book = books[index]
            if self.host.is_online():
                progress.upload.merge(self._upload_book(book, book.book_id))
                progress.auto_synced_books += 1
            self._schedule_step(
                f"match:sync:{index + 1}",
                lambda: self._auto_sync_step(books, index + 1, progress),
                progress.fail,
            )
            return

        unmatched = self.queue.unmatched_books()
        logger.info(f"Matching: {len(unmatched)} unmatched books")
        self._schedule_step("match:book:0", lambda: self._match_step(unmatched, 0, progress), progress.fail)

    def _match_step(self, books: list[HistoricalBook], index: int, progress: MatchProgress) -> None:
        if index >= len(books):
            progress.done = True
            self._leave()
            logger.info(
                f"Matching done: {progress.matched_books} matched, "
                f"{progress.proposed_books} awaiting selection, {progress.unmatched_books} unmatched"
            )
            return

        book = books[index]
        resolution, candidates, error = self._find_match(book)
        if error is not None and error.kind == SyncErrorKind.OFFLINE:
            progress.error = error.message
            self._leave()
            return

        if resolution is not None:
            self._accept_book(book, resolution)
            progress.matched_books += 1
            progress.upload.merge(self._upload_book(book, resolution.book_id))
        elif candidates:
            proposal = MatchProposal(id=next(self._proposal_ids), book=book, candidates=candidates)
            self.proposals[proposal.id] = proposal
            progress.proposed_books += 1
        else:
            progress.unmatched_books += 1

        self._schedule_step(
            f"match:book:{index + 1}", lambda: self._match_step(books, index + 1, progress), progress.fail
        )

    def _find_match(self, book: HistoricalBook) -> tuple[Resolution | None, list[RemoteBook], SyncError | None]:
        locator = synthetic_locator(book.book_hash) if book.book_hash else None
        cached = self.resolver.resolve_cached(book.book_hash, locator=locator)
        if cached:
            return cached, [], None

        if not self.host.is_online():
            return None, [], SyncError(SyncErrorKind.OFFLINE, "Offline")

        entry = self.cache.get_by_hash(book.book_hash) if book.book_hash else None
        if entry and (entry.isbn13 or entry.isbn10):
            by_isbn = self.resolver.search_by_isbn(entry.isbn10, entry.isbn13)
            if by_isbn.ok:
                return Resolution(by_isbn.value.id, MatchMethod.ISBN, by_isbn.value), [], None

        if book.book_hash:
            by_hash = self.client.get_book_by_hash(book.book_hash)
            if by_hash.ok:
                return Resolution(by_hash.value.id, MatchMethod.HASH, by_hash.value), [], None
            if by_hash.kind == SyncErrorKind.OFFLINE:
                return None, [], by_hash.error

        candidates = self.resolver.search_candidates(search_title(book.title))
        if not candidates.ok:
            return None, [], candidates.error
        return None, candidates.value, None

    def _accept_book(self, book: HistoricalBook, resolution: Resolution) -> None:
        locator = synthetic_locator(book.book_hash) if book.book_hash else None
        remote = resolution.book or RemoteBook(id=resolution.book_id)
        if resolution.method != MatchMethod.CACHE or locator:
            self.resolver.accept(book.book_hash, remote, resolution.method, locator=locator)
        self.queue.mark_book_matched(book.source_book_id, resolution.book_id, book.book_hash)

    def _upload_book(self, book: HistoricalBook, book_id: int) -> UploadReport:
        sessions = self.queue.sessions_for_book(book.source_book_id, book.book_hash, unsynced_only=True)
        if not sessions:
            return UploadReport()
        return self.uploader.upload(book_id, sessions[0].book_type, sessions, HistoricalSink(self.queue))

    def pending_proposals(self) -> list[MatchProposal]:
        return list(self.proposals.values())

    def confirm_match(self, proposal_id: int, book_id: int) -> Result[UploadReport]:
        """Accept the user's choice for a proposal and upload that book's sessions.

        A book id that is not among the candidates is accepted as a manual match.
        """
        proposal = self.proposals.get(proposal_id)
        if proposal is None:
            return Result.fail(SyncErrorKind.NOT_FOUND, f"No match proposal {proposal_id}")
        if not self._enter(EngineState.SYNCING):
            return Result.success(None)
        try:
            chosen = next((c for c in proposal.candidates if c.id == book_id), None)
            method = MatchMethod.TITLE if chosen else MatchMethod.MANUAL
            resolution = Resolution(book_id, method, chosen or RemoteBook(id=book_id))
            self._accept_book(proposal.book, resolution)
            del self.proposals[proposal_id]
            logger.info(f"Matched {proposal.book.title} to book {book_id} ({method.value})")
            if not self.host.is_online():
                return Result.success(UploadReport())
            return Result.success(self._upload_book(proposal.book, book_id))
        finally:
            self._leave()

    def skip_match(self, proposal_id: int) -> bool:
        return self.proposals.pop(proposal_id, None) is not None

    # Re-uploads

    def _upload_grouped(self, name: str, sessions: list[HistoricalSession]) -> Result[UploadReport]:
        """Upload historical sessions grouped by book, one book per tick."""
        groups: dict[tuple[int, str], list[HistoricalSession]] = {}
        for session in sessions:
            groups.setdefault((session.book_id, session.book_type), []).append(session)
        items = list(groups.items())
        report = UploadReport()
        sink = HistoricalSink(self.queue)

        def step(index: int) -> None:
            if index >= len(items):
                self._leave()
                logger.info(f"{name}: {report.synced} synced, {report.unmatched} unmatched, {report.failed} failed")
                return
            (book_id, book_type), group = items[index]
            report.merge(self.uploader.upload(book_id, book_type, group, sink))
            self._schedule_step(f"{name}:{index + 1}", lambda: step(index + 1), report.errors.append)

        self._schedule_step(f"{name}:0", lambda: step(0), report.errors.append)
        return Result.success(report)

    def resync_historical(self) -> Result[UploadReport]:
        """Upload every synced historical session again; 404s queue sessions for re-matching."""
        if not self.host.is_online():
            return Result.fail(SyncErrorKind.OFFLINE, "Offline")
        if not self._enter(EngineState.SYNCING):
            return Result.success(None)
        return self._upload_grouped("resync", self.queue.synced_sessions())

    def sync_rematched(self) -> Result[UploadReport]:
        """Upload historical sessions that are matched but not yet synced."""
        if not self.host.is_online():
            return Result.fail(SyncErrorKind.OFFLINE, "Offline")
        if not self._enter(EngineState.SYNCING):
            return Result.success(None)
        return self._upload_grouped("rematched", self.queue.matched_unsynced_sessions())

    # User actions

    def test_connection(self) -> Result[str]:
        """Check configuration, server reachability and credentials."""
        if not self.client.server_url:
            return Result.fail(SyncErrorKind.CONFIG, "Server URL not configured")
        health = self.client.check_health()
        if not health.ok:
            return Result.fail(health.error.kind, f"Server unreachable: {health.error.message}", health.error.status)
        auth = self.client.test_auth()
        if not auth.ok:
            return auth
        if self.client.has_bearer_credentials:
            token = self.client.login(self.settings.catalog_username, self.settings.catalog_password)
            if not token.ok:
                return Result.fail(token.error.kind, f"Catalog login failed: {token.error.message}", token.error.status)
        return Result.success("Connection OK")

    def match_statistics(self) -> dict[str, int]:
        return self.queue.historical_stats()

    def stats(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "pending_sessions": self.queue.count(),
            "identity_cache": self.cache.stats(),
            "historical": self.queue.historical_stats(),
            "proposals": len(self.proposals),
            "scheduled_tasks": self.tasks.pending,
            "active_session": self.active.title if self.active else None,
        }
