"""
state/store.py -- Short-lived key/value state for rate-limit counters and token revocations.

Two shared mutable resources live here:
  - counters: "<action>|<identity>" -> (count, window expiry)
  - marks:    "revoked|<jti>"      -> expiry

Both backends expose the same atomic operations so the rate limiter and the
token service never do a read-then-write across two calls:

    store = SQLiteStateStore(Path("authgate_state.db"))
    allowed, count, expires_at = store.consume("login|10.0.0.1", limit=5, window=900, now=time.time())
    store.mark("revoked|abc", ttl=3600, now=time.time())   # True the first time only
    store.purge_expired(time.time())

Callers pass `now` explicitly. Expiry is always judged against the caller's
clock, which keeps tests deterministic.

MemoryStateStore serializes on a threading.Lock (single process).
SQLiteStateStore wraps each operation in BEGIN IMMEDIATE so concurrent
processes sharing the file are serialized by SQLite's write lock. A lock
that cannot be acquired within `timeout` raises StoreUnavailable.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Optional, Protocol

logger = logging.getLogger("authgate.state")

_DDL = (
    """
    CREATE TABLE IF NOT EXISTS counters (
        key         TEXT PRIMARY KEY,
        count       INTEGER NOT NULL,
        expires_at  REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS marks (
        key         TEXT PRIMARY KEY,
        expires_at  REAL NOT NULL
    )
    """,
)


class StoreUnavailable(Exception):
    """The state store timed out or is unreachable. Recoverable -- surfaced as 503."""


class StateStore(Protocol):
    def consume(self, key: str, limit: int, window: float, now: float) -> tuple[bool, int, float]: ...

    def increment(self, key: str, window: float, now: float) -> tuple[int, float]: ...

    def get(self, key: str, now: float) -> Optional[tuple[int, float]]: ...

    def clear(self, key: str) -> None: ...

    def mark(self, key: str, ttl: float, now: float) -> bool: ...

    def is_marked(self, key: str, now: float) -> bool: ...

    def purge_expired(self, now: float) -> int: ...

    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class MemoryStateStore:
    """Process-local state store. Suitable for a single worker and for tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, tuple[int, float]] = {}
        self._marks: dict[str, float] = {}

    def _live_counter(self, key: str, now: float) -> Optional[tuple[int, float]]:
        entry = self._counters.get(key)
        if entry is None:
            return None
        if entry[1] <= now:
            del self._counters[key]
            return None
        return entry

    def consume(self, key: str, limit: int, window: float, now: float) -> tuple[bool, int, float]:
        """Count one attempt unless the key is already at `limit`.

        Returns (allowed, count, expires_at). A refused attempt leaves the
        counter untouched.
        """
        with self._lock:
            entry = self._live_counter(key, now)
            if entry is None:
                entry = (0, now + window)
            count, expires_at = entry
            if count >= limit:
                return False, count, expires_at
            self._counters[key] = (count + 1, expires_at)
            return True, count + 1, expires_at

    def increment(self, key: str, window: float, now: float) -> tuple[int, float]:
        with self._lock:
            entry = self._live_counter(key, now) or (0, now + window)
            count, expires_at = entry[0] + 1, entry[1]
            self._counters[key] = (count, expires_at)
            return count, expires_at

    def get(self, key: str, now: float) -> Optional[tuple[int, float]]:
        with self._lock:
            return self._live_counter(key, now)

    def clear(self, key: str) -> None:
        with self._lock:
            self._counters.pop(key, None)

    def mark(self, key: str, ttl: float, now: float) -> bool:
        """Set-if-absent. Returns True only for the caller that created the mark."""
        with self._lock:
            expires_at = self._marks.get(key)
            if expires_at is not None and expires_at > now:
                return False
            self._marks[key] = now + ttl
            return True

    def is_marked(self, key: str, now: float) -> bool:
        with self._lock:
            expires_at = self._marks.get(key)
            return expires_at is not None and expires_at > now

    def purge_expired(self, now: float) -> int:
        with self._lock:
            dead_counters = [k for k, (_, exp) in self._counters.items() if exp <= now]
            dead_marks = [k for k, exp in self._marks.items() if exp <= now]
            for k in dead_counters:
                del self._counters[k]
            for k in dead_marks:
                del self._marks[k]
        return len(dead_counters) + len(dead_marks)

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# SQLite backend
# ---------------------------------------------------------------------------


class SQLiteStateStore:
    """File-backed state store shared by every worker process on one host."""

    def __init__(self, db_path: Path | str, timeout: float = 5.0) -> None:
        # isolation_level=None: transactions are opened explicitly with BEGIN IMMEDIATE.
        self._conn = sqlite3.connect(str(db_path), timeout=timeout, check_same_thread=False, isolation_level=None)
        # One connection is shared by the thread pool; sqlite3 objects are not
        # safe for concurrent use from several threads.
        self._lock = threading.Lock()
        self._conn.execute("PRAGMA journal_mode=WAL")
        for ddl in _DDL:
            self._conn.execute(ddl)

    def _transaction(self, fn):
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
                result = fn(self._conn)
                self._conn.execute("COMMIT")
            except sqlite3.OperationalError as exc:
                self._rollback()
                raise StoreUnavailable(str(exc)) from exc
            except Exception:
                self._rollback()
                raise
            return result

    def _rollback(self) -> None:
        # A failed BEGIN leaves no transaction open; a failed COMMIT does.
        if self._conn.in_transaction:
            self._conn.execute("ROLLBACK")

    @staticmethod
    def _live_counter(conn: sqlite3.Connection, key: str, now: float) -> Optional[tuple[int, float]]:
        row = conn.execute("SELECT count, expires_at FROM counters WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        if row[1] <= now:
            conn.execute("DELETE FROM counters WHERE key = ?", (key,))
            return None
        return row[0], row[1]

    def consume(self, key: str, limit: int, window: float, now: float) -> tuple[bool, int, float]:
        def op(conn: sqlite3.Connection) -> tuple[bool, int, float]:
            count, expires_at = self._live_counter(conn, key, now) or (0, now + window)
            if count >= limit:
                return False, count, expires_at
            conn.execute(
                "INSERT OR REPLACE INTO counters (key, count, expires_at) VALUES (?, ?, ?)",
                (key, count + 1, expires_at),
            )
            return True, count + 1, expires_at

        return self._transaction(op)

    def increment(self, key: str, window: float, now: float) -> tuple[int, float]:
        def op(conn: sqlite3.Connection) -> tuple[int, float]:
            count, expires_at = self._live_counter(conn, key, now) or (0, now + window)
            conn.execute(
                "INSERT OR REPLACE INTO counters (key, count, expires_at) VALUES (?, ?, ?)",
                (key, count + 1, expires_at),
            )
            return count + 1, expires_at

        return self._transaction(op)

    def get(self, key: str, now: float) -> Optional[tuple[int, float]]:
        return self._transaction(lambda conn: self._live_counter(conn, key, now))

    def clear(self, key: str) -> None:
        self._transaction(lambda conn: conn.execute("DELETE FROM counters WHERE key = ?", (key,)))

    def mark(self, key: str, ttl: float, now: float) -> bool:
        def op(conn: sqlite3.Connection) -> bool:
            conn.execute("DELETE FROM marks WHERE key = ? AND expires_at <= ?", (key, now))
            cursor = conn.execute("INSERT OR IGNORE INTO marks (key, expires_at) VALUES (?, ?)", (key, now + ttl))
            return cursor.rowcount == 1

        return self._transaction(op)

    def is_marked(self, key: str, now: float) -> bool:
        def op(conn: sqlite3.Connection) -> bool:
            row = conn.execute("SELECT 1 FROM marks WHERE key = ? AND expires_at > ?", (key, now)).fetchone()
            return row is not None

        return self._transaction(op)

    def purge_expired(self, now: float) -> int:
        """Delete dead counters and marks. Returns number of rows removed."""

        def op(conn: sqlite3.Connection) -> int:
            removed = conn.execute("DELETE FROM counters WHERE expires_at <= ?", (now,)).rowcount
            removed += conn.execute("DELETE FROM marks WHERE expires_at <= ?", (now,)).rowcount
            return removed

        return self._transaction(op)

    def close(self) -> None:
        self._conn.close()
