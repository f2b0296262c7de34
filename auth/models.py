"""
auth/models.py -- Domain dataclasses for authentication entities and outcomes.

Pattern: Data class (pure data containers, almost zero logic). Stores, the
token service and the orchestrator do the work.

Expected outcomes (bad input, too many attempts, expired token) are modelled
as values here -- Blocked, TokenFailure, FieldError -- so callers handle them
explicitly. Exceptions are reserved for collaborator failures.

Layer rule: no imports from api/, core/ or state/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union


@dataclass
class User:
    """A registered identity.

    email is stored lower-cased; uniqueness is case-insensitive.
    hashed_password is the bcrypt hash. It never leaves the auth layer --
    to_public() is the only view handed to callers.
    """

    name: str
    email: str
    hashed_password: str
    id: Optional[int] = None
    created_at: str = ""  # ISO 8601, set by store on insert
    updated_at: str = ""
    email_verified_at: Optional[str] = None

    def to_public(self, include_verification: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "name": self.name, "email": self.email}
        if include_verification:
            data["email_verified_at"] = self.email_verified_at
        data["created_at"] = self.created_at
        data["updated_at"] = self.updated_at
        return data


@dataclass(frozen=True)
class RequestContext:
    """Who is calling. ip doubles as the rate-limit identity."""

    ip: str = "unknown"
    user_agent: str = ""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldError:
    field: str
    reason: str


@dataclass
class Validated:
    data: dict[str, Any] = field(default_factory=dict)
    errors: list[FieldError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def error_map(self) -> dict[str, list[str]]:
        """Group reasons by field, the shape returned to API clients."""
        grouped: dict[str, list[str]] = {}
        for err in self.errors:
            grouped.setdefault(err.field, []).append(err.reason)
        return grouped


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Allowed:
    remaining: int


@dataclass(frozen=True)
class Blocked:
    retry_after: int  # seconds, always >= 1


RateDecision = Union[Allowed, Blocked]


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


class TokenError(str, Enum):
    INVALID = "invalid"
    EXPIRED = "expired"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class Claims:
    subject: str
    issued_at: int
    expires_at: int
    token_id: str
    token_type: str = "bearer"


@dataclass(frozen=True)
class IssuedToken:
    token: str
    claims: Claims

    @property
    def expires_in(self) -> int:
        return self.claims.expires_at - self.claims.issued_at


@dataclass(frozen=True)
class TokenFailure:
    kind: TokenError


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class SecurityEventName(str, Enum):
    REGISTER_SUCCESS = "register.success"
    REGISTER_INVALID = "register.validation_failed"
    REGISTER_RATE_LIMITED = "register.rate_limited"
    REGISTER_ERROR = "register.error"
    LOGIN_SUCCESS = "login.success"
    LOGIN_FAILED = "login.failed"
    LOGIN_INVALID = "login.validation_failed"
    LOGIN_RATE_LIMITED = "login.rate_limited"
    LOGIN_ERROR = "login.error"
    PROFILE_ACCESSED = "profile.accessed"
    PROFILE_NOT_FOUND = "profile.not_found"
    PROFILE_DENIED = "profile.denied"
    PROFILE_ERROR = "profile.error"
    USER_ACCESSED = "user.accessed"
    USER_DENIED = "user.denied"
    USER_ERROR = "user.error"
    LOGOUT_SUCCESS = "logout.success"
    LOGOUT_FAILED = "logout.failed"
    LOGOUT_ERROR = "logout.error"
    REFRESH_SUCCESS = "refresh.success"
    REFRESH_FAILED = "refresh.failed"
    REFRESH_ERROR = "refresh.error"


@dataclass(frozen=True)
class SecurityEvent:
    """Immutable audit record. Append-only; the core never reads it back."""

    event: str
    timestamp: str
    ip: str
    user_agent: str
    detail: dict[str, Any] = field(default_factory=dict)
