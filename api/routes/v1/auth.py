"""
api/routes/v1/auth.py -- Session and credential recovery REST endpoints.

Routes:
  POST /api/v1/auth/login            -- password login; returns principal + token pair
  POST /api/v1/auth/refresh-token    -- trade a live refresh token for a new pair
  POST /api/v1/auth/logout           -- revoke every session of the caller (requires auth)
  POST /api/v1/auth/forgot-password  -- start password recovery; generic answer always
  POST /api/v1/auth/reset-password   -- finish password recovery with the emailed token
  POST /api/v1/auth/first-login      -- activate a new account and log it in
  GET  /api/v1/auth/me               -- safe view of the caller (requires auth)

Security:
  POST /login, /refresh-token and /forgot-password are rate-limited per IP
  (slowapi). /login is additionally throttled per account by AuthService.
  Every response that carries tokens is sent with Cache-Control: no-store.
  /forgot-password answers identically for unknown, inactive and real
  addresses, and never returns the recovery token.
  Handlers raise nothing themselves: AuthError subclasses from AuthService
  propagate to the handler in api/main.py.
"""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import forgot_password_limit, limiter, login_limit, refresh_limit
from api.models import (
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    MessageResponse,
    PrincipalResponse,
    RefreshRequest,
    ResetPasswordRequest,
    TokenPairResponse,
)
from auth.dependencies import get_current_principal
from auth.models import LoginResult, Principal
from auth.service import AuthService

# Auth policy:
# - POST /api/v1/auth/login:            public, rate-limited
# - POST /api/v1/auth/refresh-token:    public, rate-limited (the refresh token is the credential)
# - POST /api/v1/auth/logout:           requires auth (get_current_principal)
# - POST /api/v1/auth/forgot-password:  public, rate-limited
# - POST /api/v1/auth/reset-password:   public (the recovery token is the credential)
# - POST /api/v1/auth/first-login:      public (the activation token is the credential)
# - GET  /api/v1/auth/me:               requires auth (get_current_principal)
router = APIRouter()


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def principal_to_response(principal: Principal) -> PrincipalResponse:
    return PrincipalResponse(**principal.to_safe_dict())


def _no_store(content: dict) -> JSONResponse:
    resp = JSONResponse(status_code=200, content=content)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _login_response(result: LoginResult) -> JSONResponse:
    return _no_store(
        LoginResponse(
            user=principal_to_response(result.principal),
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            first_login=result.first_login,
        ).model_dump(mode="json")
    )


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@limiter.limit(login_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
async def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Wrong email and wrong password produce the same INVALID_CREDENTIALS error.
    The fifth consecutive failure blocks the account; later attempts get
    429 ACCOUNT_BLOCKED_<n>_MINUTES until the block elapses.
    """
    result = await _service(request).login(body.email, body.password)
    return _login_response(result)


@limiter.limit(refresh_limit)
@router.post("/auth/refresh-token", response_model=TokenPairResponse)
async def refresh_token(request: Request, body: RefreshRequest) -> JSONResponse:
    """Rotate the session: the submitted refresh token stops working once this returns."""
    pair = await _service(request).refresh(body.refresh_token)
    return _no_store(
        TokenPairResponse(access_token=pair.access_token, refresh_token=pair.refresh_token).model_dump()
    )


@router.post("/auth/logout", response_model=LogoutResponse)
async def logout(request: Request, principal: Principal = Depends(get_current_principal)) -> LogoutResponse:
    """Revoke all refresh tokens of the caller. Safe to call repeatedly.

    Access tokens already issued stay valid until they expire.
    """
    removed = await _service(request).logout(principal.id)
    return LogoutResponse(message="Logged out.", sessions_revoked=removed)


@router.get("/auth/me", response_model=PrincipalResponse)
async def me(principal: Principal = Depends(get_current_principal)) -> PrincipalResponse:
    return principal_to_response(principal)


# ---------------------------------------------------------------------------
# Credential recovery
# ---------------------------------------------------------------------------


@limiter.limit(forgot_password_limit)
@router.post("/auth/forgot-password", response_model=MessageResponse)
async def forgot_password(
    request: Request, body: ForgotPasswordRequest, background_tasks: BackgroundTasks
) -> MessageResponse:
    """Always answers with the same message. The reset mail goes out after the response."""
    result = await _service(request).forgot_password(body.email, background_tasks)
    return MessageResponse(message=result.message)


@router.post("/auth/reset-password", response_model=MessageResponse)
async def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    """Set a new password with a recovery token. Logs the principal out everywhere."""
    await _service(request).reset_password(body.token, body.new_password)
    return MessageResponse(message="Password has been reset. Please log in again.")


@router.post("/auth/first-login", response_model=LoginResponse)
async def first_login(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    """Activate an account with its activation token and return a live session."""
    result = await _service(request).first_login(body.token, body.new_password)
    return _login_response(result)
