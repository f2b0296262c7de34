"""
API response models for AuthGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers pass every AuthService result
through one of these models before it is serialized, so a field that is not
declared here -- a password hash, say -- can never reach a client.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict

# ---------------------------------------------------------------------------
# User views
# ---------------------------------------------------------------------------


class RegisteredUser(BaseModel):
    """User view returned by POST /register."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    email: str
    created_at: str
    updated_at: str


class UserResponse(RegisteredUser):
    """User view returned by login, profile and GET /user."""

    email_verified_at: Optional[str] = None


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class RegisterResponse(BaseModel):
    status: str
    message: str
    data: RegisteredUser


class TokenData(BaseModel):
    token: str
    token_type: str
    expires_in: int


class LoginData(TokenData):
    user: UserResponse


class LoginResponse(BaseModel):
    status: str
    message: str
    data: LoginData


class ProfileResponse(BaseModel):
    status: str
    data: UserResponse


class RefreshResponse(BaseModel):
    status: str
    data: TokenData


class MessageResponse(BaseModel):
    status: str
    message: str


class ErrorResponse(BaseModel):
    """Error envelope returned on every 4xx/5xx response."""

    model_config = ConfigDict(frozen=True)

    status: str = "error"
    message: str
    errors: Optional[dict[str, list[str]]] = None
    retry_after: Optional[int] = None


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
