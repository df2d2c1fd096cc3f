from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone

from readsync.core.errors import StorageError
from readsync.core.settings import Settings

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def isoformat_utc(ts: float) -> str:
    """Format an epoch timestamp the way the server expects (UTC, second precision)."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_isoformat_utc(value: str) -> float:
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc).timestamp()


# Forward-only migrations. Entry N-1 brings the schema to version N.
MIGRATIONS: list[list[str]] = [
    # 1: identity cache, pending queue, match history
    [
        """
        CREATE TABLE IF NOT EXISTS identity_cache (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          locator TEXT NOT NULL UNIQUE,
          content_hash TEXT,
          remote_book_id INTEGER,
          title TEXT,
          author TEXT,
          last_accessed TEXT,
          created_at TEXT DEFAULT (datetime('now')),
          updated_at TEXT DEFAULT (datetime('now'))
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_identity_cache_hash ON identity_cache(content_hash)",
        "CREATE INDEX IF NOT EXISTS idx_identity_cache_remote ON identity_cache(remote_book_id)",
        """
        CREATE TABLE IF NOT EXISTS pending_sessions (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          book_id INTEGER,
          book_hash TEXT NOT NULL,
          book_type TEXT NOT NULL,
          start_time TEXT NOT NULL,
          end_time TEXT NOT NULL,
          duration_seconds INTEGER NOT NULL,
          start_progress REAL,
          end_progress REAL,
          progress_delta REAL,
          start_location TEXT,
          end_location TEXT,
          created_at TEXT NOT NULL,
          retry_count INTEGER NOT NULL DEFAULT 0,
          last_retry_at TEXT
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_pending_sessions_created ON pending_sessions(created_at, id)",
        """
        CREATE TABLE IF NOT EXISTS match_history (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          content_hash TEXT,
          remote_book_id INTEGER NOT NULL,
          method TEXT NOT NULL,
          confidence REAL,
          title TEXT,
          author TEXT,
          matched_at TEXT DEFAULT (datetime('now'))
        )
        """,
    ],
    # 2: historical sessions (archived live sessions and bulk extraction)
    [
        """
        CREATE TABLE IF NOT EXISTS historical_sessions (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          source_book_id INTEGER NOT NULL,
          source_book_title TEXT,
          book_id INTEGER,
          book_hash TEXT,
          book_type TEXT NOT NULL,
          start_time TEXT NOT NULL,
          end_time TEXT NOT NULL,
          duration_seconds INTEGER NOT NULL,
          start_progress REAL,
          end_progress REAL,
          progress_delta REAL,
          start_location TEXT,
          end_location TEXT,
          matched INTEGER NOT NULL DEFAULT 0,
          synced INTEGER NOT NULL DEFAULT 0,
          created_at TEXT DEFAULT (datetime('now')),
          UNIQUE(source_book_id, start_time, end_time)
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_historical_sessions_book ON historical_sessions(source_book_id)",
        "CREATE INDEX IF NOT EXISTS idx_historical_sessions_state ON historical_sessions(matched, synced)",
    ],
    # 3: ISBNs on cached identities
    [
        "ALTER TABLE identity_cache ADD COLUMN isbn10 TEXT",
        "ALTER TABLE identity_cache ADD COLUMN isbn13 TEXT",
        "CREATE INDEX IF NOT EXISTS idx_identity_cache_isbn13 ON identity_cache(isbn13)",
        "CREATE INDEX IF NOT EXISTS idx_identity_cache_isbn10 ON identity_cache(isbn10)",
    ],
    # 4: bearer tokens
    [
        """
        CREATE TABLE IF NOT EXISTS bearer_tokens (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          username TEXT NOT NULL UNIQUE,
          token TEXT NOT NULL,
          expires_at INTEGER NOT NULL,
          created_at TEXT DEFAULT (datetime('now'))
        )
        """,
    ],
]

SCHEMA_VERSION = len(MIGRATIONS)


def get_schema_version(conn: sqlite3.Connection) -> int:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
          version INTEGER PRIMARY KEY,
          applied_at TEXT DEFAULT (datetime('now'))
        )
        """
    )
    conn.commit()
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] or 0


def run_migrations(conn: sqlite3.Connection, migrations: list[list[str]] | None = None) -> int:
    """Apply every migration newer than the stored schema version.

    Each step runs in its own transaction together with its schema_version
    row, so a failing statement leaves the database at the previous version.

    Returns:
        Number of migrations applied

    Raises:
        StorageError: If a migration statement fails
    """
    migrations = MIGRATIONS if migrations is None else migrations
    current = get_schema_version(conn)
    applied = 0

    for version, statements in enumerate(migrations, start=1):
        if version <= current:
            continue
        if conn.in_transaction:
            conn.commit()
        try:
            conn.execute("BEGIN")
            for statement in statements:
                conn.execute(statement)
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error(f"Migration to schema version {version} failed: {e}")
            raise StorageError(f"Migration {version} failed: {e}") from e
        logger.info(f"Applied schema migration {version}")
        applied += 1

    return applied


def connect(path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


@dataclass
class DB:
    conn: sqlite3.Connection

    def init(self) -> None:
        # Readers from the host process may hold the file open
        self.conn.execute("PRAGMA journal_mode=WAL")
        run_migrations(self.conn)

    @property
    def schema_version(self) -> int:
        return get_schema_version(self.conn)

    def close(self) -> None:
        self.conn.close()


_db: DB | None = None


def init_db(settings: Settings | None = None) -> DB:
    global _db
    s = settings or Settings.from_env()
    directory = os.path.dirname(s.db_path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    _db = DB(conn=connect(s.db_path))
    _db.init()
    return _db


def get_db() -> DB:
    assert _db is not None, "DB not initialized"
    return _db
