"""Tests for storage.py"""

import sqlite3

import pytest

from readsync.core.errors import StorageError, SyncErrorKind
from readsync.core.storage import (
    DB,
    SCHEMA_VERSION,
    connect,
    get_schema_version,
    isoformat_utc,
    parse_isoformat_utc,
    run_migrations,
)


def _tables(conn):
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    return {r[0] for r in rows}


@pytest.fixture
def raw_conn():
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    return conn


class TestMigrations:
    """Tests for forward-only schema migrations."""

    def test_fresh_database_gets_all_tables(self, raw_conn):
        applied = run_migrations(raw_conn)
        assert applied == SCHEMA_VERSION
        assert {
            "identity_cache",
            "pending_sessions",
            "historical_sessions",
            "bearer_tokens",
            "match_history",
            "schema_version",
        } <= _tables(raw_conn)
        assert get_schema_version(raw_conn) == SCHEMA_VERSION

    def test_rerun_is_noop(self, raw_conn):
        run_migrations(raw_conn)
        assert run_migrations(raw_conn) == 0
        count = raw_conn.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0]
        assert count == SCHEMA_VERSION

    def test_isbn_columns_added(self, raw_conn):
        run_migrations(raw_conn)
        columns = {r[1] for r in raw_conn.execute("PRAGMA table_info(identity_cache)")}
        assert {"isbn10", "isbn13"} <= columns

    def test_failed_step_rolls_back(self, raw_conn):
        migrations = [
            ["CREATE TABLE first_table (id INTEGER)"],
            ["CREATE TABLE second_table (id INTEGER)", "THIS IS NOT SQL"],
        ]
        with pytest.raises(StorageError) as exc:
            run_migrations(raw_conn, migrations)

        assert exc.value.kind == SyncErrorKind.STORAGE
        assert get_schema_version(raw_conn) == 1
        assert "first_table" in _tables(raw_conn)
        assert "second_table" not in _tables(raw_conn)

    def test_failed_step_can_be_retried_after_fix(self, raw_conn):
        broken = [["CREATE TABLE t1 (id INTEGER)"], ["NOT SQL"]]
        with pytest.raises(StorageError):
            run_migrations(raw_conn, broken)

        fixed = [["CREATE TABLE t1 (id INTEGER)"], ["CREATE TABLE t2 (id INTEGER)"]]
        assert run_migrations(raw_conn, fixed) == 1
        assert get_schema_version(raw_conn) == 2

    def test_historical_natural_key_is_unique(self, db_conn):
        insert = """
            INSERT OR IGNORE INTO historical_sessions
                (source_book_id, book_type, start_time, end_time, duration_seconds)
            VALUES (7, 'EPUB', '2024-01-01T10:00:00Z', '2024-01-01T10:30:00Z', 1800)
        """
        db_conn.execute(insert)
        db_conn.execute(insert)
        count = db_conn.execute("SELECT COUNT(*) FROM historical_sessions").fetchone()[0]
        assert count == 1


class TestDB:
    """Tests for the DB wrapper on a file database."""

    def test_init_enables_wal(self, tmp_path):
        db = DB(conn=connect(str(tmp_path / "readsync.db")))
        db.init()
        mode = db.conn.execute("PRAGMA journal_mode").fetchone()[0]
        assert mode.lower() == "wal"
        assert db.schema_version == SCHEMA_VERSION
        db.close()

    def test_reopen_keeps_version(self, tmp_path):
        path = str(tmp_path / "readsync.db")
        DB(conn=connect(path)).init()
        db = DB(conn=connect(path))
        db.init()
        assert db.schema_version == SCHEMA_VERSION
        db.close()


class TestTimestamps:
    def test_isoformat_utc(self):
        assert isoformat_utc(0) == "1970-01-01T00:00:00Z"
        assert isoformat_utc(1_700_000_000) == "2023-11-14T22:13:20Z"

    def test_parse(self):
        assert parse_isoformat_utc("2023-11-14T22:13:20Z") == 1_700_000_000
