"""Unit tests for state/store.py, run against both backends.

Covers:
- consume(): counts up to the limit, refuses without counting, window expiry
- increment() / get() / clear()
- mark(): set-if-absent, re-markable after expiry
- purge_expired()
- SQLite lock timeout surfaces as StoreUnavailable
- A failed COMMIT is rolled back and the store keeps working
- consume() and mark() stay atomic under racing threads
"""

import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from auth.service import build_state_store
from state.store import MemoryStateStore, SQLiteStateStore, StoreUnavailable

NOW = 1_000.0


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        s = MemoryStateStore()
    else:
        s = SQLiteStateStore(tmp_path / "state.db")
    yield s
    s.close()


class TestConsume:
    def test_counts_up_to_limit(self, store):
        results = [store.consume("login|ip", 3, 60, NOW) for _ in range(3)]
        assert [(allowed, count) for allowed, count, _ in results] == [(True, 1), (True, 2), (True, 3)]

    def test_window_anchored_at_first_attempt(self, store):
        _, _, first_expiry = store.consume("login|ip", 3, 60, NOW)
        _, _, later_expiry = store.consume("login|ip", 3, 60, NOW + 30)
        assert first_expiry == later_expiry == NOW + 60

    def test_refused_attempt_not_counted(self, store):
        for _ in range(2):
            store.consume("login|ip", 2, 60, NOW)
        allowed, count, expires_at = store.consume("login|ip", 2, 60, NOW + 10)
        assert not allowed
        assert count == 2
        assert expires_at == NOW + 60
        assert store.get("login|ip", NOW + 10) == (2, NOW + 60)

    def test_window_expiry_resets(self, store):
        for _ in range(2):
            store.consume("login|ip", 2, 60, NOW)
        allowed, count, expires_at = store.consume("login|ip", 2, 60, NOW + 60)
        assert allowed
        assert count == 1
        assert expires_at == NOW + 120

    def test_keys_are_independent(self, store):
        store.consume("login|a", 1, 60, NOW)
        allowed, _, _ = store.consume("login|b", 1, 60, NOW)
        assert allowed


class TestCounters:
    def test_increment_creates_then_adds(self, store):
        assert store.increment("k", 60, NOW) == (1, NOW + 60)
        assert store.increment("k", 60, NOW + 1) == (2, NOW + 60)

    def test_get_missing_and_expired(self, store):
        assert store.get("k", NOW) is None
        store.increment("k", 60, NOW)
        assert store.get("k", NOW + 60) is None

    def test_clear(self, store):
        store.increment("k", 60, NOW)
        store.clear("k")
        assert store.get("k", NOW) is None

    def test_clear_missing_key_is_noop(self, store):
        store.clear("never-set")


class TestMarks:
    def test_mark_is_set_if_absent(self, store):
        assert store.mark("revoked|abc", 60, NOW) is True
        assert store.mark("revoked|abc", 60, NOW + 1) is False
        assert store.is_marked("revoked|abc", NOW + 1)

    def test_mark_expires(self, store):
        store.mark("revoked|abc", 60, NOW)
        assert not store.is_marked("revoked|abc", NOW + 60)
        assert store.mark("revoked|abc", 60, NOW + 60) is True

    def test_unmarked_key(self, store):
        assert not store.is_marked("revoked|nope", NOW)


def test_purge_expired(store):
    store.increment("old", 10, NOW)
    store.increment("live", 100, NOW)
    store.mark("revoked|old", 10, NOW)
    store.mark("revoked|live", 100, NOW)
    assert store.purge_expired(NOW + 50) == 2
    assert store.get("live", NOW + 50) == (1, NOW + 100)
    assert store.is_marked("revoked|live", NOW + 50)
    assert store.purge_expired(NOW + 50) == 0


def test_sqlite_state_shared_between_instances(tmp_path):
    path = tmp_path / "state.db"
    first = SQLiteStateStore(path)
    second = SQLiteStateStore(path)
    try:
        assert first.mark("revoked|abc", 60, NOW) is True
        assert second.mark("revoked|abc", 60, NOW) is False
        first.consume("login|ip", 5, 60, NOW)
        assert second.get("login|ip", NOW) == (1, NOW + 60)
    finally:
        first.close()
        second.close()


def test_sqlite_lock_timeout_raises_store_unavailable(tmp_path):
    path = tmp_path / "state.db"
    store = SQLiteStateStore(path, timeout=0.05)
    blocker = sqlite3.connect(str(path), isolation_level=None)
    blocker.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(StoreUnavailable):
            store.consume("login|ip", 5, 60, NOW)
    finally:
        blocker.execute("ROLLBACK")
        blocker.close()
        store.close()
    # The failed attempt left nothing half-written.
    reopened = SQLiteStateStore(path)
    try:
        assert reopened.get("login|ip", NOW) is None
    finally:
        reopened.close()


def test_build_state_store_selects_backend(settings, tmp_path):
    memory = build_state_store(settings.model_copy(update={"state_backend": "memory"}))
    sqlite = build_state_store(
        settings.model_copy(update={"state_backend": "sqlite", "state_db_path": str(tmp_path / "state.db")})
    )
    try:
        assert isinstance(memory, MemoryStateStore)
        assert isinstance(sqlite, SQLiteStateStore)
    finally:
        sqlite.close()


class _CommitFailsOnce:
    """Connection wrapper whose first COMMIT raises, as SQLite does on a busy writer."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self.failures_left = 1

    def execute(self, sql, *args):
        if sql == "COMMIT" and self.failures_left:
            self.failures_left -= 1
            raise sqlite3.OperationalError("database is locked")
        return self._conn.execute(sql, *args)

    @property
    def in_transaction(self) -> bool:
        return self._conn.in_transaction

    def close(self) -> None:
        self._conn.close()


def test_sqlite_failed_commit_rolls_back_and_recovers(tmp_path):
    store = SQLiteStateStore(tmp_path / "state.db")
    store._conn = _CommitFailsOnce(store._conn)
    try:
        with pytest.raises(StoreUnavailable):
            store.consume("login|ip", 5, 60, NOW)
        assert not store._conn.in_transaction
        # The uncommitted attempt was discarded; the next call starts fresh.
        assert store.consume("login|ip", 5, 60, NOW) == (True, 1, NOW + 60)
    finally:
        store.close()


# ---------------------------------------------------------------------------
# Racing threads
# ---------------------------------------------------------------------------

_THREADS = 20


def _race(fn):
    """Run fn from _THREADS threads released together; return every result."""
    barrier = threading.Barrier(_THREADS)

    def worker(_):
        barrier.wait()
        return fn()

    with ThreadPoolExecutor(max_workers=_THREADS) as pool:
        return list(pool.map(worker, range(_THREADS)))


def test_consume_is_atomic_under_race(store):
    results = _race(lambda: store.consume("login|ip", 5, 60, NOW))
    assert sum(1 for allowed, _, _ in results if allowed) == 5
    assert store.get("login|ip", NOW) == (5, NOW + 60)


def test_mark_has_one_winner_under_race(store):
    results = _race(lambda: store.mark("revoked|abc", 60, NOW))
    assert results.count(True) == 1


def test_consume_is_atomic_across_sqlite_connections(tmp_path):
    path = tmp_path / "state.db"
    stores = [SQLiteStateStore(path), SQLiteStateStore(path)]
    turn = iter(range(_THREADS))
    pick = threading.Lock()

    def attempt():
        with pick:
            index = next(turn)
        return stores[index % 2].consume("login|ip", 5, 60, NOW)

    try:
        results = _race(attempt)
        assert sum(1 for allowed, _, _ in results if allowed) == 5
    finally:
        for s in stores:
            s.close()
