"""
auth/errors.py -- Typed, expected outcomes of the auth core.

Every class carries a stable symbolic code and the HTTP status it maps to.
api/main.py installs one exception handler that translates any AuthError 1:1
into the standard error envelope, so route handlers simply let these propagate.

Anything that is NOT an AuthError (store outage, programming error) falls
through to the catch-all 500 handler and is never described to the client.
"""

from __future__ import annotations

import math


class AuthError(Exception):
    """Base class for expected auth/authz rejections."""

    status_code: int = 400
    code: str = "AUTH_ERROR"
    message: str = "Request rejected."

    def __init__(self, message: str | None = None, *, code: str | None = None) -> None:
        if message is not None:
            self.message = message
        if code is not None:
            self.code = code
        super().__init__(self.code)


# ---------------------------------------------------------------------------
# Business rejections
# ---------------------------------------------------------------------------


class InvalidCredentials(AuthError):
    status_code = 401
    code = "INVALID_CREDENTIALS"
    message = "Invalid email or password."


class UserInactive(AuthError):
    status_code = 401
    code = "USER_INACTIVE"
    message = "User account is inactive."


class UserNotFound(AuthError):
    status_code = 404
    code = "USER_NOT_FOUND"
    message = "User not found."


class UserAlreadyActivated(AuthError):
    status_code = 400
    code = "USER_ALREADY_ACTIVATED"
    message = "User has already been activated."


class InvalidOrExpiredToken(AuthError):
    status_code = 400
    code = "INVALID_OR_EXPIRED_TOKEN"
    message = "Invalid or expired token."


class AccountBlocked(AuthError):
    """Throttle rejection. The code embeds the remaining wait in whole minutes."""

    status_code = 429

    def __init__(self, remaining_seconds: float) -> None:
        self.remaining_seconds = max(0.0, remaining_seconds)
        self.minutes = max(1, math.ceil(self.remaining_seconds / 60))
        super().__init__(
            "Account temporarily blocked due to too many failed login attempts. "
            f"Try again in {self.minutes} minutes.",
            code=f"ACCOUNT_BLOCKED_{self.minutes}_MINUTES",
        )


# ---------------------------------------------------------------------------
# Token verification outcomes
# ---------------------------------------------------------------------------


class TokenError(AuthError):
    status_code = 401


class AccessTokenExpired(TokenError):
    code = "ACCESS_TOKEN_EXPIRED"
    message = "Access token expired."


class InvalidAccessToken(TokenError):
    code = "INVALID_ACCESS_TOKEN"
    message = "Invalid access token."


class RefreshTokenExpired(TokenError):
    code = "REFRESH_TOKEN_EXPIRED"
    message = "Refresh token expired."


class InvalidRefreshToken(TokenError):
    code = "INVALID_REFRESH_TOKEN"
    message = "Invalid refresh token."


# ---------------------------------------------------------------------------
# Request-level outcomes used by the HTTP dependencies and management routes
# ---------------------------------------------------------------------------


class AuthenticationRequired(AuthError):
    status_code = 401
    code = "AUTHENTICATION_REQUIRED"
    message = "Authentication required."


class Forbidden(AuthError):
    status_code = 403
    code = "FORBIDDEN"
    message = "Insufficient permissions."


class NotFound(AuthError):
    status_code = 404
    code = "NOT_FOUND"
    message = "Resource not found."


class Conflict(AuthError):
    status_code = 409
    code = "CONFLICT"
    message = "Resource already exists."
