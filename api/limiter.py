"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

This is the coarse per-IP request throttle (POST /register: 3/minute). The
login brute-force counter, which must be cleared on success and shared across
workers, is auth/rate_limit.py.

Using a single shared instance ensures all routes share the same in-memory
counter store.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def register_limit() -> str:
    """Resolved per request so REGISTER_RATE_LIMIT can be changed without code edits."""
    return get_settings().register_rate_limit
