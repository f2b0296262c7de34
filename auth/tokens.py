"""
auth/tokens.py -- Password hashing, credential checks and the bearer-token lifecycle.

Security design decisions:
  JWT: python-jose with HS256. Tokens carry sub (user id), iat, exp, jti, iss
       and typ="bearer". exp is always iat + TTL.

  Passwords: bcrypt, used directly. The _DUMMY_HASH constant enables timing
       equalization in authenticate_user() so response time does not reveal
       whether an email is registered [C1].

  Revocation: a token is invalidated by marking its jti in the state store
       until the token's own expiry. refresh() claims the mark with an atomic
       set-if-absent, so two racing refreshes of one token cannot both win.

  Expiry: checked against the service clock, not jose's, so the state
       machine (Issued -> Expired | Invalidated) is testable without sleeping.

Layer rule: no imports from api/. core/ and state/ are allowed.
"""

from __future__ import annotations

import logging
import secrets
import time
from typing import TYPE_CHECKING, Callable, Optional, Union

import bcrypt
from jose import JWTError, jwt

from auth.models import Claims, IssuedToken, TokenError, TokenFailure
from core.config import get_settings
from state.store import StateStore

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("authgate.auth")

_ALGORITHM = "HS256"
_TOKEN_TYPE = "bearer"
_REVOKED_PREFIX = "revoked|"
_REQUIRED_CLAIMS = ("sub", "iat", "exp", "jti")

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    The validator caps passwords at 72 bytes, bcrypt's input limit.
    """
    rounds = get_settings().bcrypt_rounds
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Over-long input or a corrupt hash: never a match.
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first login attempt is not measurably slower than subsequent ones.
_DUMMY_HASH: str = hash_password("authgate_timing_dummy")


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Check an email/password pair with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown email: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the User on success, None on any failure.
    """
    user = store.get_by_email(email)
    if user is None:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user


# ---------------------------------------------------------------------------
# Token lifecycle
# ---------------------------------------------------------------------------


class TokenService:
    """Issues, verifies, refreshes and invalidates signed bearer tokens.

    Usage:
        tokens = TokenService(secret_key, ttl_seconds=3600, revocations=MemoryStateStore())
        issued = tokens.issue("42")
        claims = tokens.verify(issued.token)        # Claims or TokenFailure
        fresh = tokens.refresh(issued.token)        # old token now INVALID
        tokens.invalidate(fresh.token)              # logout
    """

    def __init__(
        self,
        secret_key: str,
        ttl_seconds: int,
        revocations: StateStore,
        issuer: str = "authgate",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret_key = secret_key
        self.ttl_seconds = ttl_seconds
        self._revocations = revocations
        self._issuer = issuer
        self._clock = clock

    def issue(self, subject: str) -> IssuedToken:
        issued_at = int(self._clock())
        claims = Claims(
            subject=str(subject),
            issued_at=issued_at,
            expires_at=issued_at + self.ttl_seconds,
            token_id=secrets.token_hex(16),
        )
        payload = {
            "sub": claims.subject,
            "iat": claims.issued_at,
            "exp": claims.expires_at,
            "jti": claims.token_id,
            "iss": self._issuer,
            "typ": _TOKEN_TYPE,
        }
        token = jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)
        return IssuedToken(token=token, claims=claims)

    def verify(self, token: str) -> Union[Claims, TokenFailure]:
        """Check signature, structure, expiry and revocation. Never mutates state."""
        decoded = self._decode(token)
        if isinstance(decoded, TokenFailure):
            return decoded
        if self._revocations.is_marked(_REVOKED_PREFIX + decoded.token_id, self._clock()):
            return TokenFailure(TokenError.INVALID)
        return decoded

    def refresh(self, token: str) -> Union[IssuedToken, TokenFailure]:
        """Rotate a fresh token. The presented token is invalidated (single use)."""
        claims = self.verify(token)
        if isinstance(claims, TokenFailure):
            return claims
        if not self._claim_revocation(claims):
            # A concurrent refresh or logout got there first.
            return TokenFailure(TokenError.INVALID)
        return self.issue(claims.subject)

    def invalidate(self, token: str) -> Optional[TokenFailure]:
        """Mark a token unusable. Returns None on success, including when it was already revoked."""
        decoded = self._decode(token)
        if isinstance(decoded, TokenFailure):
            return decoded
        self._claim_revocation(decoded)
        return None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _claim_revocation(self, claims: Claims) -> bool:
        now = self._clock()
        # Keep the mark at least one second so a token expiring "now" is still covered.
        ttl = max(1.0, claims.expires_at - now)
        return self._revocations.mark(_REVOKED_PREFIX + claims.token_id, ttl, now)

    def _decode(self, token: str) -> Union[Claims, TokenFailure]:
        if not token or token.count(".") != 2:
            return TokenFailure(TokenError.MALFORMED)
        try:
            jwt.get_unverified_claims(token)
        except JWTError:
            return TokenFailure(TokenError.MALFORMED)

        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                issuer=self._issuer,
                options={"verify_exp": False, "verify_iat": False, "verify_aud": False},
            )
        except JWTError:
            return TokenFailure(TokenError.INVALID)

        if any(name not in payload for name in _REQUIRED_CLAIMS) or payload.get("typ") != _TOKEN_TYPE:
            return TokenFailure(TokenError.MALFORMED)
        try:
            claims = Claims(
                subject=str(payload["sub"]),
                issued_at=int(payload["iat"]),
                expires_at=int(payload["exp"]),
                token_id=str(payload["jti"]),
            )
        except (TypeError, ValueError):
            return TokenFailure(TokenError.MALFORMED)

        if claims.expires_at <= self._clock():
            return TokenFailure(TokenError.EXPIRED)
        return claims
