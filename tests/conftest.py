"""
tests/conftest.py -- Shared test fixtures for AuthGate.

This module provides:
  - FakeClock / RecordingAudit: deterministic time and an inspectable audit sink
  - user_store / state_store: isolated stores per test
  - service: AuthService wired to the fakes above
  - client: TestClient over the real app with a patched lifespan
  - existing_user: one registered account for login/profile tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
A uuid suffix gives every test its own database.

The environment must be set before any auth/core import:
  DEBUG=true         -- get_settings() auto-generates SECRET_KEY
  BCRYPT_ROUNDS=4    -- keeps hashing fast
  ALLOWED_HOSTS      -- TestClient sends Host: testserver
  STATE_BACKEND      -- no state file written by the default lifespan
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from typing import Any

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("STATE_BACKEND", "memory")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.models import RequestContext, User
from auth.rate_limit import RateLimiter
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import TokenService, hash_password
from core.config import Settings, get_settings
from state.store import MemoryStateStore

PASSWORD = "Secret#123"

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock frozen at a fixed instant until advance() is called."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingAudit:
    """AuditSink that keeps events in memory instead of logging them."""

    def __init__(self) -> None:
        self.events: list[tuple[str, RequestContext, dict[str, Any]]] = []

    def record(self, event, context: RequestContext, **detail: Any) -> None:
        self.events.append((str(getattr(event, "value", event)), context, detail))

    @property
    def names(self) -> list[str]:
        return [name for name, _, _ in self.events]

    def clear(self) -> None:
        self.events.clear()


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _memory_db_url() -> str:
    return f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def _patch_lifespan(service: AuthService, user_store: UserStore, state_store: MemoryStateStore):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine so shutdown's .cancel() has
    a real asyncio.Task to act on.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.state_store = state_store
        app.state.auth_service = service
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_register_throttle() -> None:
    """slowapi keeps its counters in a module-level limiter; start each test clean."""
    limiter.reset()


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def audit() -> RecordingAudit:
    return RecordingAudit()


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = UserStore(_memory_db_url())
    yield store
    store.close()


@pytest.fixture
def state_store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def tokens(settings: Settings, state_store: MemoryStateStore, clock: FakeClock) -> TokenService:
    return TokenService(
        settings.secret_key,
        ttl_seconds=settings.token_ttl_seconds,
        revocations=state_store,
        issuer=settings.token_issuer,
        clock=clock,
    )


@pytest.fixture
def service(
    settings: Settings,
    user_store: UserStore,
    state_store: MemoryStateStore,
    tokens: TokenService,
    audit: RecordingAudit,
    clock: FakeClock,
) -> AuthService:
    return AuthService(user_store, RateLimiter(state_store, clock=clock), tokens, audit, settings)


@pytest.fixture
def existing_user(user_store: UserStore) -> User:
    """A registered account: ana@example.com / PASSWORD."""
    user_id = user_store.create_user(User(name="Ana", email="ana@example.com", hashed_password=hash_password(PASSWORD)))
    return user_store.get_by_id(user_id)


@pytest.fixture
def client(
    service: AuthService,
    user_store: UserStore,
    state_store: MemoryStateStore,
) -> Generator[TestClient, None, None]:
    """TestClient over the real app, routes and middleware, with isolated stores.

    Shares `service` (and so `clock` and `audit`) with the test, which lets a
    test advance time or inspect audit events between requests.
    """
    app.router.lifespan_context = _patch_lifespan(service, user_store, state_store)
    with TestClient(app, raise_server_exceptions=True) as test_client:
        yield test_client


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
