from __future__ import annotations

import dataclasses
import logging
import threading
from typing import Any

import httpx
from fastapi import BackgroundTasks, FastAPI
from fastapi.responses import JSONResponse

from readsync.core.engine import SyncEngine
from readsync.core.errors import Result, SyncErrorKind
from readsync.core.log_setup import configure_logging
from readsync.core.settings import Settings
from readsync.core.storage import init_db
from readsync.core.token_store import TokenStore
from readsync.providers.catalog import RemoteClient
from readsync.providers.statistics import StatisticsReader

logger = logging.getLogger(__name__)

app = FastAPI(title="readsync")

ERROR_STATUS = {
    SyncErrorKind.OFFLINE: 503,
    SyncErrorKind.AUTH: 401,
    SyncErrorKind.PERMISSION: 403,
    SyncErrorKind.NOT_FOUND: 404,
    SyncErrorKind.VALIDATION: 422,
    SyncErrorKind.SERVER: 502,
    SyncErrorKind.REJECTED: 502,
    SyncErrorKind.STORAGE: 500,
    SyncErrorKind.CONFIG: 400,
}


class HttpReaderHost:
    """Reader state as last reported by the host over HTTP."""

    def __init__(self) -> None:
        self.progress = 0.0
        self.location = "0"
        self.locator: str | None = None
        self.online = True

    def update(
        self,
        progress: float | None = None,
        location: str | None = None,
        online: bool | None = None,
    ) -> None:
        if progress is not None:
            self.progress = progress
        if location is not None:
            self.location = location
        if online is not None:
            self.online = online

    def current_position(self) -> tuple[float, str]:
        return self.progress, self.location

    def current_locator(self) -> str | None:
        return self.locator

    def is_online(self) -> bool:
        return self.online


_engine: SyncEngine | None = None
_host: HttpReaderHost | None = None
# The engine expects one logical thread; request handlers run on a pool
_lock = threading.Lock()


def init_engine(settings: Settings | None = None, transport: httpx.BaseTransport | None = None) -> SyncEngine:
    global _engine, _host
    s = settings or Settings.from_env()
    db = init_db(s)
    tokens = TokenStore(db.conn)
    client = RemoteClient.from_settings(s, tokens, transport=transport)
    statistics = StatisticsReader(s.statistics_db_path) if s.statistics_db_path else None

    _host = HttpReaderHost()
    _engine = SyncEngine(s, db.conn, client, _host, statistics=statistics)
    logger.info(f"Sync engine ready (server: {s.server_url or 'not configured'})")
    return _engine


def get_engine() -> SyncEngine:
    assert _engine is not None, "Engine not initialized"
    return _engine


def get_host() -> HttpReaderHost:
    assert _host is not None, "Engine not initialized"
    return _host


@app.on_event("startup")
def _startup() -> None:
    s = Settings.from_env()
    configure_logging(s)
    init_engine(s)


def _drain_tasks() -> None:
    """Run deferred chunks, releasing the lock between ticks so requests can interleave."""
    engine = get_engine()
    while True:
        with _lock:
            if not engine.tasks.tick():
                return


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if dataclasses.is_dataclass(value):
        return dataclasses.asdict(value)
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    return str(value)


def _respond(result: Result[Any]) -> Any:
    if result.ok:
        return {"ok": True, "result": _jsonable(result.value)}
    status = ERROR_STATUS.get(result.error.kind, 500)
    return JSONResponse(status_code=status, content=result.to_dict())


# Host events


@app.post("/events/document-opened")
def document_opened(locator: str, progress: float = 0.0, location: str = "0", online: bool | None = None):
    host = get_host()
    with _lock:
        engine = get_engine()
        if engine.active is not None:
            # Close the previous document at its last reported position
            engine.end_session(silent=True, force_queue=True)
        host.update(progress, location, online)
        host.locator = locator
        session = engine.on_document_opened(locator)
    if session is None:
        return {"ok": False, "error": "Document not tracked"}
    return {"ok": True, "session": _jsonable(session)}


@app.post("/events/document-closed")
def document_closed(progress: float | None = None, location: str | None = None, online: bool | None = None):
    host = get_host()
    with _lock:
        host.update(progress, location, online)
        result = get_engine().on_document_closed()
        host.locator = None
    if not result.ok and result.kind == SyncErrorKind.VALIDATION:
        return {"ok": True, "discarded": result.error.message}
    return _respond(result)


@app.post("/events/suspend")
def suspend(progress: float | None = None, location: str | None = None, online: bool | None = None):
    with _lock:
        get_host().update(progress, location, online)
        result = get_engine().on_suspend()
    if not result.ok and result.kind == SyncErrorKind.VALIDATION:
        return {"ok": True, "discarded": result.error.message}
    return _respond(result)


@app.post("/events/resume")
def resume(progress: float | None = None, location: str | None = None, online: bool | None = None):
    with _lock:
        get_host().update(progress, location, online)
        session = get_engine().on_resume()
    return {"ok": True, "session": _jsonable(session)}


# User actions


@app.post("/sync")
def sync_now():
    with _lock:
        return _respond(get_engine().sync_pending(silent=False))


@app.post("/connection/test")
def connection_test():
    with _lock:
        return _respond(get_engine().test_connection())


@app.post("/historical/extract")
def historical_extract(background_tasks: BackgroundTasks):
    with _lock:
        result = get_engine().extract_historical()
    background_tasks.add_task(_drain_tasks)
    return _respond(result)


@app.post("/historical/match")
def historical_match(background_tasks: BackgroundTasks):
    with _lock:
        result = get_engine().match_historical()
    background_tasks.add_task(_drain_tasks)
    return _respond(result)


@app.get("/historical/proposals")
def historical_proposals():
    with _lock:
        return {"proposals": _jsonable(get_engine().pending_proposals())}


@app.post("/historical/proposals/{proposal_id}/select")
def historical_select(proposal_id: int, book_id: int):
    with _lock:
        return _respond(get_engine().confirm_match(proposal_id, book_id))


@app.post("/historical/proposals/{proposal_id}/skip")
def historical_skip(proposal_id: int):
    with _lock:
        skipped = get_engine().skip_match(proposal_id)
    if not skipped:
        return JSONResponse(status_code=404, content={"ok": False, "error": "Unknown proposal"})
    return {"ok": True}


@app.post("/historical/resync")
def historical_resync(background_tasks: BackgroundTasks):
    with _lock:
        result = get_engine().resync_historical()
    background_tasks.add_task(_drain_tasks)
    return _respond(result)


@app.post("/historical/sync-rematched")
def historical_sync_rematched(background_tasks: BackgroundTasks):
    with _lock:
        result = get_engine().sync_rematched()
    background_tasks.add_task(_drain_tasks)
    return _respond(result)


@app.get("/historical/stats")
def historical_stats():
    with _lock:
        return get_engine().match_statistics()


@app.get("/stats")
def stats():
    with _lock:
        return get_engine().stats()


@app.get("/pending")
def pending(limit: int = 100):
    with _lock:
        engine = get_engine()
        return {
            "count": engine.queue.count(),
            "sessions": [s.to_dict() for s in engine.queue.list_pending(limit)],
        }


@app.delete("/pending")
def clear_pending():
    with _lock:
        return {"deleted": get_engine().queue.clear_pending()}
