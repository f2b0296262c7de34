"""
auth/service.py -- AuthService: one request, one pass through the security pipeline.

Per endpoint the order is fixed:

    rate-limit gate -> validate -> sanitize -> business action -> tokens -> audit -> result

Each stage that fails short-circuits the rest. Every code path writes exactly
one audit event, then returns an AuthResult (status code + JSON body). The
HTTP layer only serializes it.

Failure policy:
  Expected outcomes -- bad input, too many attempts, wrong password, expired or
  revoked token -- arrive as values (Validated.errors, Blocked, None,
  TokenFailure) and map to 4xx with a precise message. Credential failures are
  deliberately generic ("Invalid credentials") so responses do not reveal
  which emails are registered.

  Collaborator failures arrive as exceptions. StoreUnavailable and database
  OperationalError (lock timeouts, outages) map to 503; anything else to 500.
  Internal error text is logged, never returned.

  The login limiter fails closed: if the counter store is down, nobody logs in.

Collaborators are injected so tests can swap in in-memory fakes:
    service = AuthService(users, RateLimiter(store), TokenService(...), SecurityAuditLog(), settings)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError, OperationalError

from auth.audit import AuditSink, SecurityAuditLog
from auth.models import (
    Blocked,
    IssuedToken,
    RequestContext,
    TokenError,
    TokenFailure,
    User,
)
from auth.models import SecurityEventName as Ev
from auth.rate_limit import RateLimiter
from auth.sanitize import sanitize, sanitize_email
from auth.store import EventStore, UserStore
from auth.tokens import TokenService, authenticate_user, hash_password
from auth.validation import LoginRules, PasswordPolicy, RegistrationRules, validate
from state.store import MemoryStateStore, SQLiteStateStore, StateStore, StoreUnavailable

logger = logging.getLogger("authgate.auth")

_UNAVAILABLE = (StoreUnavailable, OperationalError)

# Column width of users.name and users.email. Sanitizing can lengthen a value
# (& becomes &amp;), so it is re-checked after sanitize().
_MAX_FIELD_LENGTH = 255

_TOKEN_MESSAGES = {
    TokenError.EXPIRED: "Token has expired",
    TokenError.INVALID: "Token is invalid",
    TokenError.MALFORMED: "Token is invalid",
}


@dataclass
class AuthResult:
    status_code: int
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)


def _ok(status_code: int, message: Optional[str] = None, data: Any = None) -> AuthResult:
    body: dict[str, Any] = {"status": "success"}
    if message is not None:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return AuthResult(status_code, body)


def _error(status_code: int, message: str, **extra: Any) -> AuthResult:
    return AuthResult(status_code, {"status": "error", "message": message, **extra})


def _retry_message(seconds: int) -> str:
    minutes = -(-seconds // 60)
    return f"Too many attempts. Please try again in {minutes} minute{'s' if minutes != 1 else ''}."


class AuthService:
    def __init__(
        self,
        users: UserStore,
        limiter: RateLimiter,
        tokens: TokenService,
        audit: AuditSink,
        settings,
    ) -> None:
        self.users = users
        self.limiter = limiter
        self.tokens = tokens
        self.audit = audit
        self.settings = settings
        self.password_policy = PasswordPolicy.from_settings(settings)

    # ------------------------------------------------------------------
    # register
    # ------------------------------------------------------------------

    def register(self, payload: Any, ctx: RequestContext) -> AuthResult:
        try:
            result = validate(payload, RegistrationRules, policy=self.password_policy)
            if not result.ok:
                return self._invalid(Ev.REGISTER_INVALID, ctx, result.error_map())

            name = sanitize(result.data["name"])
            email = sanitize_email(result.data["email"])
            if len(name) < 2:
                return self._invalid(
                    Ev.REGISTER_INVALID, ctx, {"name": ["The name must contain at least 2 visible characters."]}
                )
            if len(name) > _MAX_FIELD_LENGTH:
                return self._invalid(
                    Ev.REGISTER_INVALID,
                    ctx,
                    {"name": [f"The name must not be greater than {_MAX_FIELD_LENGTH} characters."]},
                )
            if len(email) > _MAX_FIELD_LENGTH:
                return self._invalid(
                    Ev.REGISTER_INVALID,
                    ctx,
                    {"email": [f"The email must not be greater than {_MAX_FIELD_LENGTH} characters."]},
                )
            if self.users.email_exists(email):
                return self._invalid(Ev.REGISTER_INVALID, ctx, {"email": ["The email has already been taken."]})

            user = User(name=name, email=email, hashed_password=hash_password(result.data["password"]))
            try:
                user_id = self.users.create_user(user)
            except IntegrityError:
                # Lost a race with a concurrent registration of the same email.
                return self._invalid(Ev.REGISTER_INVALID, ctx, {"email": ["The email has already been taken."]})

            created = self.users.get_by_id(user_id)
            if created is None:
                raise RuntimeError(f"user {user_id} missing after insert")
        except _UNAVAILABLE:
            logger.exception("Registration failed: storage unavailable")
            self.audit.record(Ev.REGISTER_ERROR, ctx, error="storage unavailable")
            return _error(503, "Registration service temporarily unavailable.")
        except Exception as exc:
            logger.exception("Registration failed")
            self.audit.record(Ev.REGISTER_ERROR, ctx, error=type(exc).__name__)
            return _error(500, "User registration failed. Please try again later.")

        self.audit.record(Ev.REGISTER_SUCCESS, ctx, user_id=created.id, email=created.email)
        return _ok(201, "User created successfully", created.to_public(include_verification=False))

    # ------------------------------------------------------------------
    # login
    # ------------------------------------------------------------------

    def login(self, payload: Any, ctx: RequestContext) -> AuthResult:
        key = RateLimiter.key_for("login", ctx.ip)
        try:
            decision = self.limiter.check_and_consume(
                key, self.settings.login_max_attempts, self.settings.login_window_seconds
            )
            if isinstance(decision, Blocked):
                self.audit.record(Ev.LOGIN_RATE_LIMITED, ctx, retry_after=decision.retry_after)
                result = _error(429, _retry_message(decision.retry_after), retry_after=decision.retry_after)
                result.headers["Retry-After"] = str(decision.retry_after)
                return result

            checked = validate(payload, LoginRules)
            if not checked.ok:
                return self._invalid(Ev.LOGIN_INVALID, ctx, checked.error_map())

            email = sanitize_email(checked.data["email"])
            user = authenticate_user(self.users, email, checked.data["password"])
            if user is None:
                self.audit.record(Ev.LOGIN_FAILED, ctx, email=email, attempts=self.limiter.attempts(key))
                return _error(401, "Invalid credentials")

            self.limiter.clear(key)
            issued = self.tokens.issue(str(user.id))
        except _UNAVAILABLE:
            logger.exception("Login failed: storage unavailable")
            self.audit.record(Ev.LOGIN_ERROR, ctx, error="storage unavailable")
            return _error(503, "Authentication service temporarily unavailable")
        except Exception as exc:
            logger.exception("Login failed")
            self.audit.record(Ev.LOGIN_ERROR, ctx, error=type(exc).__name__)
            return _error(500, "Login failed. Please try again later.")

        self.audit.record(Ev.LOGIN_SUCCESS, ctx, user_id=user.id, email=user.email)
        return _ok(
            200,
            "Login successful",
            {
                "user": user.to_public(),
                **self._token_data(issued),
            },
        )

    # ------------------------------------------------------------------
    # profile / user
    # ------------------------------------------------------------------

    def profile(self, token: Optional[str], ctx: RequestContext) -> AuthResult:
        try:
            claims = self.tokens.verify(token) if token else TokenFailure(TokenError.MALFORMED)
            if isinstance(claims, TokenFailure):
                self.audit.record(Ev.PROFILE_DENIED, ctx, reason=claims.kind.value)
                return _error(401, _TOKEN_MESSAGES[claims.kind] if token else "Token not provided")
            user = self._subject_user(claims.subject)
            if user is None:
                self.audit.record(Ev.PROFILE_NOT_FOUND, ctx, subject=claims.subject)
                return _error(404, "User not found")
        except _UNAVAILABLE:
            logger.exception("Profile lookup failed: storage unavailable")
            self.audit.record(Ev.PROFILE_ERROR, ctx, error="storage unavailable")
            return _error(503, "Service temporarily unavailable")
        except Exception as exc:
            logger.exception("Profile lookup failed")
            self.audit.record(Ev.PROFILE_ERROR, ctx, error=type(exc).__name__)
            return _error(500, "Unable to retrieve profile")

        self.audit.record(Ev.PROFILE_ACCESSED, ctx, user_id=user.id)
        return _ok(200, data=user.to_public())

    def current_user(self, token: Optional[str], ctx: RequestContext) -> Optional[User]:
        """Resolve the bearer token to a User, or None. Backs GET /user.

        Storage errors are audited, then propagate; the API layer's exception
        handlers turn them into 503/500.
        """
        try:
            claims = self.tokens.verify(token) if token else TokenFailure(TokenError.MALFORMED)
            user = None if isinstance(claims, TokenFailure) else self._subject_user(claims.subject)
        except _UNAVAILABLE:
            logger.exception("User lookup failed: storage unavailable")
            self.audit.record(Ev.USER_ERROR, ctx, error="storage unavailable")
            raise
        except Exception as exc:
            logger.exception("User lookup failed")
            self.audit.record(Ev.USER_ERROR, ctx, error=type(exc).__name__)
            raise
        if user is None:
            reason = claims.kind.value if isinstance(claims, TokenFailure) else "unknown subject"
            self.audit.record(Ev.USER_DENIED, ctx, reason=reason)
            return None
        self.audit.record(Ev.USER_ACCESSED, ctx, user_id=user.id)
        return user

    # ------------------------------------------------------------------
    # logout / refresh
    # ------------------------------------------------------------------

    def logout(self, token: Optional[str], ctx: RequestContext) -> AuthResult:
        """Invalidate the presented token.

        Idempotent: a token that was already logged out (or refreshed away)
        still gets 200. Forged, malformed or expired tokens get 401.
        """
        try:
            failure = self.tokens.invalidate(token) if token else TokenFailure(TokenError.MALFORMED)
        except _UNAVAILABLE:
            logger.exception("Logout failed: storage unavailable")
            self.audit.record(Ev.LOGOUT_ERROR, ctx, error="storage unavailable")
            return _error(503, "Service temporarily unavailable")
        except Exception as exc:
            logger.exception("Logout failed")
            self.audit.record(Ev.LOGOUT_ERROR, ctx, error=type(exc).__name__)
            return _error(500, "Logout failed")

        if failure is not None:
            self.audit.record(Ev.LOGOUT_FAILED, ctx, reason=failure.kind.value)
            return _error(401, _TOKEN_MESSAGES[failure.kind] if token else "Token not provided")
        self.audit.record(Ev.LOGOUT_SUCCESS, ctx)
        return _ok(200, "Successfully logged out")

    def refresh(self, token: Optional[str], ctx: RequestContext) -> AuthResult:
        try:
            outcome = self.tokens.refresh(token) if token else TokenFailure(TokenError.MALFORMED)
        except _UNAVAILABLE:
            logger.exception("Token refresh failed: storage unavailable")
            self.audit.record(Ev.REFRESH_ERROR, ctx, error="storage unavailable")
            return _error(503, "Service temporarily unavailable")
        except Exception as exc:
            logger.exception("Token refresh failed")
            self.audit.record(Ev.REFRESH_ERROR, ctx, error=type(exc).__name__)
            return _error(500, "Token refresh failed")

        if isinstance(outcome, TokenFailure):
            self.audit.record(Ev.REFRESH_FAILED, ctx, reason=outcome.kind.value)
            return _error(401, "Token cannot be refreshed")
        self.audit.record(Ev.REFRESH_SUCCESS, ctx, user_id=outcome.claims.subject)
        return _ok(200, data=self._token_data(outcome))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _invalid(self, event: Ev, ctx: RequestContext, errors: dict[str, list[str]]) -> AuthResult:
        self.audit.record(event, ctx, errors=errors)
        return _error(422, "Validation failed", errors=errors)

    def _subject_user(self, subject: str) -> Optional[User]:
        try:
            user_id = int(subject)
        except ValueError:
            return None
        return self.users.get_by_id(user_id)

    @staticmethod
    def _token_data(issued: IssuedToken) -> dict[str, Any]:
        return {"token": issued.token, "token_type": issued.claims.token_type, "expires_in": issued.expires_in}


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------


def build_state_store(settings) -> StateStore:
    if settings.state_backend == "memory":
        return MemoryStateStore()
    return SQLiteStateStore(settings.state_db_path, timeout=settings.store_timeout_seconds)


def build_auth_service(settings, users: UserStore, state: StateStore) -> AuthService:
    """Wire the collaborators into one AuthService. Used by api/main.py and main.py."""
    events = EventStore(users.engine) if settings.audit_persist else None
    tokens = TokenService(
        settings.secret_key,
        ttl_seconds=settings.token_ttl_seconds,
        revocations=state,
        issuer=settings.token_issuer,
    )
    return AuthService(users, RateLimiter(state), tokens, SecurityAuditLog(events), settings)
