"""
api/main.py -- FastAPI application entry point for AuthGate.

Run with:  uvicorn asgi:app --reload
           python asgi.py

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- slowapi request hooks; per-route limits run in their decorators

Lifespan builds the collaborators once (user store, state store, audit log,
token service, rate limiter) and injects them into a single AuthService on
app.state. Shutdown tears them down in reverse.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import OperationalError

from api.limiter import limiter
from api.models import ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.dependencies import request_context
from auth.models import SecurityEventName
from auth.service import build_auth_service, build_state_store
from auth.store import UserStore
from core.config import get_settings
from state.store import StoreUnavailable

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authgate.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval: int) -> None:
    """Drop expired counters and revocation marks so the state file stays small.

    Expiry is enforced on read regardless; this loop only reclaims space.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await asyncio.to_thread(app.state.state_store.purge_expired, time.time())
        except Exception:
            logger.exception("State purge failed")
            continue
        if removed:
            logger.info("Purged %d expired state entries", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build stores and services on startup; close them on shutdown."""
    logger.info("AuthGate API starting up")
    app.state.user_store = UserStore(_settings.database_url, timeout=_settings.store_timeout_seconds)
    app.state.state_store = build_state_store(_settings)
    app.state.auth_service = build_auth_service(_settings, app.state.user_store, app.state.state_store)
    logger.info(
        "Auth initialized (state_backend=%s, token_ttl=%ds, audit_persist=%s)",
        _settings.state_backend,
        _settings.token_ttl_seconds,
        _settings.audit_persist,
    )
    app.state.purge_task = asyncio.create_task(_purge_loop(app, _settings.state_purge_interval_seconds))

    yield

    app.state.purge_task.cancel()
    app.state.state_store.close()
    app.state.user_store.close()
    logger.info("AuthGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="AuthGate API",
    description="Credential registration, login and bearer-token lifecycle.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix=_settings.api_prefix, tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope as AuthService results
# so API clients can parse errors uniformly.
# ---------------------------------------------------------------------------


# Request-validation failures rejected before AuthService runs.
_VALIDATION_EVENTS = {
    f"{_settings.api_prefix}/register": SecurityEventName.REGISTER_INVALID,
    f"{_settings.api_prefix}/login": SecurityEventName.LOGIN_INVALID,
}


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 when a slowapi throttle (POST /register) trips."""
    retry_after = exc.limit.limit.get_expiry() if exc.limit is not None else 60
    service = getattr(request.app.state, "auth_service", None)
    if service is not None:
        service.audit.record(SecurityEventName.REGISTER_RATE_LIMITED, request_context(request), limit=str(exc.detail))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            message="Too many attempts. Please try again later.",
            retry_after=retry_after,
        ).model_dump(exclude_none=True),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 when the body is not parseable JSON. Audited like an AuthService validation failure."""
    errors: dict[str, list[str]] = {}
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part != "body"]
        field = loc[0] if loc and err.get("type") != "json_invalid" else "body"
        errors.setdefault(field, []).append(err.get("msg", "Invalid value."))
    event = _VALIDATION_EVENTS.get(request.url.path)
    service = getattr(request.app.state, "auth_service", None)
    if event is not None and service is not None:
        service.audit.record(event, request_context(request), errors=errors)
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(message="Validation failed", errors=errors).model_dump(exclude_none=True),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(message=str(exc.detail)).model_dump(exclude_none=True),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(StoreUnavailable)
@app.exception_handler(OperationalError)
async def unavailable_handler(request: Request, exc: Exception) -> JSONResponse:
    """Return 503 when a store times out outside AuthService's own handling (GET /user)."""
    return JSONResponse(
        status_code=503,
        content=ErrorResponse(message="Service temporarily unavailable").model_dump(exclude_none=True),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(message="An unexpected error occurred.").model_dump(exclude_none=True),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit -- load balancer checks must not be throttled.
# ---------------------------------------------------------------------------


@app.get(f"{_settings.api_prefix}/health", tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=__version__)
