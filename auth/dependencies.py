"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Bearer tokens only: Authorization: Bearer <token>. There is no cookie
session -- the service is consumed by an SPA and API clients.

bearer_token() is the soft extractor (None when absent).
get_current_user() resolves the token through AuthService and raises HTTP 401
if that fails.

Layer rule: may import from fastapi because this module is part of the
FastAPI dependency injection system. No imports from api/.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from auth.models import RequestContext, User
from auth.service import AuthService


def bearer_token(request: Request) -> str | None:
    """Return the raw bearer token from the Authorization header, or None."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, value = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def request_context(request: Request) -> RequestContext:
    """Caller identity for rate limiting and audit events."""
    return RequestContext(
        ip=request.client.host if request.client else "unknown",
        user_agent=request.headers.get("User-Agent", ""),
    )


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_current_user(
    request: Request,
    service: AuthService = Depends(get_auth_service),
) -> User:
    """Require a valid bearer token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    user = service.current_user(bearer_token(request), request_context(request))
    if user is None:
        raise HTTPException(
            status_code=401,
            detail="Unauthenticated.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user
