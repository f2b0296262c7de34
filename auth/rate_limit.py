"""
auth/rate_limit.py -- Per-(action, identity) attempt counting for brute-force protection.

Fixed window anchored at the first counted attempt:

    limiter = RateLimiter(MemoryStateStore())
    key = RateLimiter.key_for("login", "10.0.0.1")          # "login|10.0.0.1"
    decision = limiter.check_and_consume(key, max_attempts=5, window_seconds=900)
    if isinstance(decision, Blocked):
        ...  # 429, Retry-After: decision.retry_after
    ...
    limiter.clear(key)                                      # after a successful login

check_and_consume() counts the attempt in the same atomic step as the check.
Two parallel requests at count N-1 therefore cannot both get through: one of
them observes the other's increment. A blocked check never touches the
counter, so retry_after keeps counting down instead of being pushed out.

The counter disappears when its window expires or on clear(). Nothing here
ever decrements it.

Store failures (StoreUnavailable) propagate; the orchestrator fails closed.
"""

from __future__ import annotations

import math
import time
from typing import Callable

from auth.models import Allowed, Blocked, RateDecision
from state.store import StateStore


class RateLimiter:
    def __init__(self, store: StateStore, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock

    @staticmethod
    def key_for(action: str, identity: str) -> str:
        return f"{action}|{identity}"

    def check_and_consume(self, key: str, max_attempts: int, window_seconds: float) -> RateDecision:
        now = self._clock()
        allowed, count, expires_at = self._store.consume(key, max_attempts, window_seconds, now)
        if not allowed:
            return Blocked(retry_after=max(1, math.ceil(expires_at - now)))
        return Allowed(remaining=max(0, max_attempts - count))

    def record_failure(self, key: str, window_seconds: float) -> int:
        """Count a failure that did not pass through check_and_consume(). Returns the new count.

        The login flow never calls this: check_and_consume() already counts every
        attempt, failed or not. It is for callers that only want failures counted,
        such as a second factor checked after the gate let the request through.
        """
        count, _ = self._store.increment(key, window_seconds, self._clock())
        return count

    def attempts(self, key: str) -> int:
        entry = self._store.get(key, self._clock())
        return entry[0] if entry else 0

    def clear(self, key: str) -> None:
        self._store.clear(key)
