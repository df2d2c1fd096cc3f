"""Tests for token_store.py"""

from unittest.mock import MagicMock

import pytest

from readsync.core.errors import SyncError, SyncErrorKind
from readsync.core.token_store import TOKEN_LIFETIME_SECONDS, TokenStore

DAY = 24 * 3600


@pytest.fixture
def store(db_conn, clock):
    return TokenStore(db_conn, clock)


def _set_expiry(db_conn, username, expires_at):
    db_conn.execute("UPDATE bearer_tokens SET expires_at = ? WHERE username = ?", (expires_at, username))
    db_conn.commit()


class TestSave:
    def test_save_sets_28_day_expiry(self, store, clock):
        entry = store.save("alice", "tok-1")
        assert entry.expires_at == int(clock.now) + 28 * DAY
        assert store.get("alice").token == "tok-1"

    def test_new_token_replaces_old(self, store, db_conn):
        store.save("alice", "tok-1")
        store.save("alice", "tok-2")
        assert store.get("alice").token == "tok-2"
        count = db_conn.execute("SELECT COUNT(*) FROM bearer_tokens WHERE username = 'alice'").fetchone()[0]
        assert count == 1

    def test_delete(self, store):
        store.save("alice", "tok")
        store.delete("alice")
        assert store.get("alice") is None

    def test_cleanup_expired(self, store, db_conn, clock):
        store.save("alice", "a")
        store.save("bob", "b")
        _set_expiry(db_conn, "alice", int(clock.now) - 1)
        assert store.cleanup_expired() == 1
        assert store.get("alice") is None
        assert store.get("bob") is not None


class TestGetOrRefresh:
    """Reuse and refresh rules."""

    def test_reuses_token_27_days_out(self, store, db_conn, clock):
        store.save("alice", "cached")
        _set_expiry(db_conn, "alice", int(clock.now) + 27 * DAY)
        login = MagicMock(return_value="fresh")

        assert store.get_or_refresh("alice", "pw", login) == "cached"
        assert store.get_or_refresh("alice", "pw", login) == "cached"
        login.assert_not_called()

    def test_refreshes_token_12_hours_out(self, store, db_conn, clock):
        store.save("alice", "cached")
        _set_expiry(db_conn, "alice", int(clock.now) + 12 * 3600)
        login = MagicMock(return_value="fresh")

        assert store.get_or_refresh("alice", "pw", login) == "fresh"
        assert store.get_or_refresh("alice", "pw", login) == "fresh"
        login.assert_called_once_with("alice", "pw")
        assert store.get("alice").expires_at == int(clock.now) + TOKEN_LIFETIME_SECONDS

    def test_logs_in_without_cached_token(self, store):
        login = MagicMock(return_value="fresh")
        assert store.get_or_refresh("alice", "pw", login) == "fresh"
        login.assert_called_once()

    def test_force_refresh_ignores_cache(self, store):
        store.save("alice", "cached")
        login = MagicMock(return_value="fresh")
        assert store.get_or_refresh("alice", "pw", login, force_refresh=True) == "fresh"
        login.assert_called_once()

    def test_login_failure_propagates_and_keeps_nothing(self, store):
        login = MagicMock(side_effect=SyncError(SyncErrorKind.AUTH, "bad credentials", 401))
        with pytest.raises(SyncError):
            store.get_or_refresh("alice", "pw", login)
        assert store.get("alice") is None
