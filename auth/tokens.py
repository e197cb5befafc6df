"""
auth/tokens.py -- JWT session tokens, password hashing, and recovery secrets.

Security design decisions:
  JWT: python-jose with HS256. Access and refresh tokens carry the same claims
       (principal_id, email, tenant_id, tier) but are signed with two different
       secrets and carry a typ claim, so possession of one kind can never forge
       or stand in for the other. TokenService raises typed errors instead of
       returning None: callers need to tell "expired, refresh silently" apart
       from "invalid, force re-login".

  Passwords: bcrypt used directly. Its cost factor makes brute-force expensive;
       the work factor is configurable (BCRYPT_ROUNDS). The _DUMMY_HASH
       constant enables timing equalization in AuthService.login() so response
       time does not reveal whether an email exists.

  Recovery secrets: secrets.token_hex(32) for URL tokens (256 bits), and a
       6-digit secrets.randbelow code for channels that cannot carry a link.

TokenService holds no state besides its configuration. It is built once at
startup (TokenService.from_settings) and injected into AuthService.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import (
    AccessTokenExpired,
    InvalidAccessToken,
    InvalidRefreshToken,
    RefreshTokenExpired,
    TokenError,
)
from auth.models import Principal, Tier, TokenPair, TokenPayload

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("tenantgate.auth")

_ALGORITHM = "HS256"
_ACCESS = "access"
_REFRESH = "refresh"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. The API layer caps
    passwords at 100 characters (Pydantic field).

    CPU-bound: async callers must run this in a worker thread.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    bcrypt.checkpw compares in constant time. A malformed stored hash is
    treated as a mismatch rather than an error.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash.
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones. AuthService.login() always runs bcrypt, against
# this hash when the email is unknown.
_DUMMY_HASH: str = hash_password("tenantgate_timing_dummy", rounds=10)


def dummy_hash() -> str:
    return _DUMMY_HASH


# ---------------------------------------------------------------------------
# Recovery secrets
# ---------------------------------------------------------------------------


def generate_recovery_token() -> str:
    """64 hex characters, safe to embed in a URL query string."""
    return secrets.token_hex(32)


def generate_recovery_code() -> str:
    """Six decimal digits in [100000, 999999]."""
    return str(100000 + secrets.randbelow(900000))


# ---------------------------------------------------------------------------
# JWT session tokens
# ---------------------------------------------------------------------------


class TokenService:
    """Issues and verifies the access/refresh token pair.

    Usage:
        tokens = TokenService.from_settings(get_settings())
        pair = tokens.issue(principal)
        payload = tokens.verify_access(pair.access_token)
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        access_expire_seconds: int = 3600,
        refresh_expire_seconds: int = 30 * 24 * 3600,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("both signing secrets are required")
        if access_secret == refresh_secret:
            raise ValueError("access and refresh tokens must use different signing secrets")
        self._access_secret = access_secret
        self._refresh_secret = refresh_secret
        self.access_expire_seconds = access_expire_seconds
        self.refresh_expire_seconds = refresh_expire_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> TokenService:
        return cls(
            access_secret=settings.jwt_secret,
            refresh_secret=settings.jwt_refresh_secret,
            access_expire_seconds=settings.access_token_expire_seconds,
            refresh_expire_seconds=settings.refresh_token_expire_seconds,
        )

    def issue(self, principal: Principal) -> TokenPair:
        """Encode the principal into two independently signed tokens."""
        return TokenPair(
            access_token=self._encode(principal, _ACCESS, self._access_secret, self.access_expire_seconds),
            refresh_token=self._encode(principal, _REFRESH, self._refresh_secret, self.refresh_expire_seconds),
        )

    def verify_access(self, token: str) -> TokenPayload:
        return self._decode(token, _ACCESS, self._access_secret, AccessTokenExpired, InvalidAccessToken)

    def verify_refresh(self, token: str) -> TokenPayload:
        return self._decode(token, _REFRESH, self._refresh_secret, RefreshTokenExpired, InvalidRefreshToken)

    def _encode(self, principal: Principal, typ: str, secret: str, expire_seconds: int) -> str:
        now = datetime.now(timezone.utc)
        claims = {
            "principal_id": principal.id,
            "email": principal.email,
            "tier": principal.tier.value,
            "typ": typ,
            # jti keeps two tokens minted in the same second distinct.
            "jti": secrets.token_hex(8),
            "iat": int(now.timestamp()),
            "exp": now + timedelta(seconds=expire_seconds),
        }
        if principal.tenant_id is not None:
            claims["tenant_id"] = principal.tenant_id
        return jwt.encode(claims, secret, algorithm=_ALGORITHM)

    @staticmethod
    def _decode(
        token: str,
        typ: str,
        secret: str,
        expired_error: type[TokenError],
        invalid_error: type[TokenError],
    ) -> TokenPayload:
        try:
            claims = jwt.decode(token, secret, algorithms=[_ALGORITHM])
        except ExpiredSignatureError as exc:
            raise expired_error() from exc
        except JWTError as exc:
            raise invalid_error() from exc

        if claims.get("typ") != typ:
            raise invalid_error()
        try:
            return TokenPayload(
                principal_id=str(claims["principal_id"]),
                email=str(claims["email"]),
                tier=Tier(claims["tier"]),
                tenant_id=claims.get("tenant_id"),
                jti=str(claims.get("jti", "")),
                issued_at=datetime.fromtimestamp(int(claims["iat"]), tz=timezone.utc),
                expires_at=datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise invalid_error() from exc
