"""Reading session segmentation.

Live sessions are bounded by document open and close; bulk sessions are
reconstructed from the host's page-turn statistics by splitting on idle
gaps.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable

from readsync.core.errors import Result, SyncErrorKind
from readsync.core.settings import Settings

SESSION_GAP_SECONDS = 300

MODE_DURATION = "duration"
MODE_PAGES = "pages"


def page_progress(page: int | None, total_pages: int | None) -> float:
    """Percent through the book (0-100); 0 when the page count is unknown."""
    if not total_pages or total_pages <= 0 or page is None:
        return 0.0
    return page / total_pages * 100


def page_number(location: str | None) -> int:
    try:
        return int(float(location)) if location not in (None, "") else 0
    except (TypeError, ValueError):
        return 0


def round_progress(value: float, places: int) -> float:
    """Round half up to ``places`` decimals."""
    multiplier = 10 ** places
    return math.floor(value * multiplier + 0.5) / multiplier


def format_duration(seconds: int | float | None) -> str:
    """Human readable duration, e.g. ``1h 5m 9s``, ``45s`` or ``0s``."""
    if seconds is None or seconds < 0:
        return "0s"
    seconds = int(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)

    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


@dataclass
class PageObservation:
    """One row of host page statistics."""

    timestamp: int
    duration: int
    page: int
    total_pages: int | None = None

    @property
    def progress(self) -> float:
        return page_progress(self.page, self.total_pages)


@dataclass
class ReadingSession:
    """A finished session with epoch timestamps and raw progress values."""

    start_time: float
    end_time: float
    duration_seconds: int
    start_progress: float
    end_progress: float
    start_location: str
    end_location: str

    @property
    def progress_delta(self) -> float:
        return self.end_progress - self.start_progress

    @property
    def pages_read(self) -> int:
        return abs(page_number(self.end_location) - page_number(self.start_location))


@dataclass
class ActiveSession:
    """In-memory session between document open and close. Never persisted."""

    locator: str
    title: str
    book_type: str
    start_time: float
    start_progress: float
    start_location: str
    content_hash: str | None = None
    resolved_book_id: int | None = None
    source_book_id: int | None = None


def split_windows(
    observations: Iterable[PageObservation],
    gap: int = SESSION_GAP_SECONDS,
) -> list[list[PageObservation]]:
    """Group time-ordered observations into windows separated by idle gaps > ``gap``."""
    windows: list[list[PageObservation]] = []
    current: list[PageObservation] = []
    for obs in observations:
        if current and obs.timestamp - current[-1].timestamp > gap:
            windows.append(current)
            current = []
        current.append(obs)
    if current:
        windows.append(current)
    return windows


def window_session(window: list[PageObservation]) -> ReadingSession:
    first, last = window[0], window[-1]
    return ReadingSession(
        start_time=first.timestamp,
        end_time=last.timestamp,
        duration_seconds=sum(o.duration or 0 for o in window),
        start_progress=first.progress,
        end_progress=last.progress,
        start_location=str(first.page),
        end_location=str(last.page),
    )


def reconstruct_sessions(
    observations: Iterable[PageObservation],
    gap: int = SESSION_GAP_SECONDS,
) -> list[ReadingSession]:
    """Rebuild sessions from page statistics.

    A window becomes a session only with strictly positive net progress;
    single-point windows and purely backward paging are dropped.
    """
    sessions = []
    for window in split_windows(observations, gap):
        session = window_session(window)
        if session.progress_delta > 0:
            sessions.append(session)
    return sessions


def validate_session(duration: float, pages_read: int, settings: Settings) -> str | None:
    """Reason the session should be discarded, or None if it is valid."""
    if settings.session_detection_mode == MODE_PAGES:
        if pages_read < settings.min_pages:
            return f"only {pages_read} pages read (minimum {settings.min_pages})"
        return None

    if duration < settings.min_duration_seconds:
        return f"duration {int(duration)}s below minimum {settings.min_duration_seconds}s"
    if pages_read <= 0:
        return "no pages read"
    return None


def close_session(
    active: ActiveSession,
    closed_at: float,
    end_progress: float,
    end_location: str,
    settings: Settings,
) -> Result[ReadingSession]:
    """Finish a live session, failing with a validation error if it is too short."""
    session = ReadingSession(
        start_time=active.start_time,
        end_time=closed_at,
        duration_seconds=int(closed_at - active.start_time),
        start_progress=active.start_progress,
        end_progress=end_progress,
        start_location=active.start_location,
        end_location=end_location,
    )
    reason = validate_session(session.duration_seconds, session.pages_read, settings)
    if reason:
        return Result.fail(SyncErrorKind.VALIDATION, reason)
    return Result.success(session)
