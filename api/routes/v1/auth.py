"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes (mounted under settings.api_prefix, "/api" by default):
  POST /register   -- create an account; slowapi throttle 3/minute per IP
  POST /login      -- email/password login; returns a bearer token
  GET  /profile    -- current user in a status envelope (bearer)
  POST /logout     -- invalidate the presented token (bearer)
  POST /refresh    -- rotate the presented token (bearer)
  GET  /user       -- bare current user object (bearer)

The handlers are thin: extract body, bearer token and caller context, call
AuthService, serialize the AuthResult through a response model. All security
decisions live in auth/service.py.

Handlers are plain `def` so FastAPI runs them in its thread pool -- bcrypt and
SQLite calls block.

Security:
  [H2] POST /login brute-force protection is AuthService's RateLimiter
       (5 attempts / 15 minutes per IP, cleared on success).
  [M5] Cache-Control: no-store on every response from this router.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from api.limiter import limiter, register_limit
from api.models import (
    ErrorResponse,
    LoginResponse,
    MessageResponse,
    ProfileResponse,
    RefreshResponse,
    RegisterResponse,
    UserResponse,
)
from auth.dependencies import bearer_token, get_auth_service, get_current_user, request_context
from auth.models import User
from auth.service import AuthResult, AuthService

# Auth policy:
# - POST /register: public, throttled
# - POST /login:    public, brute-force counter
# - GET  /profile, POST /logout, POST /refresh: bearer token, checked by AuthService
#   so every outcome (missing, expired, revoked) is audited with its reason
# - GET  /user:     bearer token via get_current_user
router = APIRouter()

_ERRORS = {401: {"model": ErrorResponse}, 500: {"model": ErrorResponse}, 503: {"model": ErrorResponse}}


def _respond(result: AuthResult, model: Optional[type[BaseModel]] = None) -> JSONResponse:
    if result.status_code < 400 and model is not None:
        content = model.model_validate(result.body).model_dump(mode="json")
    else:
        content = ErrorResponse.model_validate(result.body).model_dump(exclude_none=True)
    resp = JSONResponse(status_code=result.status_code, content=content, headers=result.headers)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post(
    "/register",
    status_code=201,
    response_model=RegisterResponse,
    responses={422: {"model": ErrorResponse}, 429: {"model": ErrorResponse}, **_ERRORS},
)
@limiter.limit(register_limit)  # must be BELOW @router so the route registers the throttled wrapper
def register(
    request: Request,
    payload: Any = Body(default=None),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Create an account. The response never includes the password."""
    return _respond(service.register(payload, request_context(request)), RegisterResponse)


@router.post(
    "/login",
    response_model=LoginResponse,
    responses={422: {"model": ErrorResponse}, 429: {"model": ErrorResponse}, **_ERRORS},
)
def login(
    request: Request,
    payload: Any = Body(default=None),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Authenticate with email and password; return a bearer token.

    Wrong email and wrong password produce the same 401 body.
    """
    return _respond(service.login(payload, request_context(request)), LoginResponse)


# ---------------------------------------------------------------------------
# Bearer-token endpoints
# ---------------------------------------------------------------------------


@router.get("/profile", response_model=ProfileResponse, responses={404: {"model": ErrorResponse}, **_ERRORS})
def profile(request: Request, service: AuthService = Depends(get_auth_service)) -> JSONResponse:
    return _respond(service.profile(bearer_token(request), request_context(request)), ProfileResponse)


@router.post("/logout", response_model=MessageResponse, responses=_ERRORS)
def logout(request: Request, service: AuthService = Depends(get_auth_service)) -> JSONResponse:
    """Invalidate the presented token. Repeating the call with the same token is harmless."""
    return _respond(service.logout(bearer_token(request), request_context(request)), MessageResponse)


@router.post("/refresh", response_model=RefreshResponse, responses=_ERRORS)
def refresh(request: Request, service: AuthService = Depends(get_auth_service)) -> JSONResponse:
    """Exchange the presented token for a new one. The old token stops working."""
    return _respond(service.refresh(bearer_token(request), request_context(request)), RefreshResponse)


@router.get("/user", response_model=UserResponse, responses={401: {"model": ErrorResponse}})
def current_user(user: User = Depends(get_current_user)) -> UserResponse:
    return UserResponse(**user.to_public())
