"""
api/main.py -- FastAPI application entry point for TenantGate.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan is the composition root: it builds the stores, the token service,
the login throttle, the notifier, the recovery flow and the two services, and
hangs them on app.state. Nothing in auth/ constructs its own collaborators.
"""

from __future__ import annotations

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
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.permissions import router as permissions_router
from api.routes.v1.users import router as users_router
from auth.errors import AccountBlocked, AuthError
from auth.notifier import Notifier, build_notifier
from auth.permission_store import PermissionStore
from auth.permissions import PermissionService
from auth.recovery import RecoveryFlow
from auth.service import AuthService
from auth.store import UserStore
from auth.throttle import DatabaseAttemptStore, InMemoryAttemptStore, LoginThrottle
from auth.tokens import TokenService
from core.config import Settings, get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("tenantgate.api")


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------


def build_throttle(settings: Settings) -> LoginThrottle:
    if settings.attempt_store == "database":
        store = DatabaseAttemptStore(settings.database_url)
        logger.info("Login throttle backed by the database (shared across instances)")
    else:
        store = InMemoryAttemptStore()
        logger.warning(
            "Login throttle state is process-local: with N workers or instances an attacker "
            "gets up to N x %d attempts per window. Set ATTEMPT_STORE=database to share it.",
            settings.login_max_attempts,
        )
    return LoginThrottle(
        store,
        max_attempts=settings.login_max_attempts,
        block_minutes=settings.login_block_minutes,
        window_minutes=settings.login_attempt_window_minutes,
    )


def init_state(
    app: FastAPI,
    settings: Settings,
    user_store: UserStore,
    permission_store: PermissionStore,
    notifier: Notifier | None = None,
) -> None:
    """Wire every collaborator onto app.state. Also used by the test suite.

    notifier defaults to the one build_notifier() picks from settings.
    """
    if notifier is None:
        notifier = build_notifier(settings)
    recovery = RecoveryFlow(
        user_store, notifier, settings.frontend_url, expire_minutes=settings.recovery_token_expire_minutes
    )
    app.state.settings = settings
    app.state.user_store = user_store
    app.state.permission_store = permission_store
    app.state.notifier = notifier
    app.state.throttle = build_throttle(settings)
    app.state.auth_service = AuthService(
        user_store,
        TokenService.from_settings(settings),
        app.state.throttle,
        recovery,
        bcrypt_rounds=settings.bcrypt_rounds,
    )
    app.state.permission_service = PermissionService(user_store, permission_store)


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. Stores are opened first because every service depends on them.
    """
    settings = get_settings()
    logger.info("TenantGate API starting up")
    user_store = UserStore(settings.database_url)
    permission_store = PermissionStore(settings.database_url)
    init_state(app, settings, user_store, permission_store)
    if not user_store.has_root():
        logger.warning("No root principal exists. Create one with: python main.py create-root")

    yield

    permission_store.close()
    user_store.close()
    throttle_store = app.state.throttle.store
    if isinstance(throttle_store, DatabaseAttemptStore):
        throttle_store.close()
    logger.info("TenantGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="TenantGate API",
    description="Authentication and tenant-scoped authorization for multi-tenant backends.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

_settings = get_settings()

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


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

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users & Tenants"])
app.include_router(permissions_router, prefix="/api/v1", tags=["Permissions"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Translate an expected auth outcome 1:1 into its status and symbolic code."""
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(),
    )
    if isinstance(exc, AccountBlocked):
        response.headers["Retry-After"] = str(exc.minutes * 60)
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients exactly how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation.

    Only field locations and messages are echoed back, never the submitted
    values: a rejected password must not appear in the response.
    """
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', '')}" for err in exc.errors()
    )
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=problems,
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the log only, never to the
    response body. Store outages and programming errors both land here.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Return API liveness, version and database reachability."""
    try:
        request.app.state.user_store.ping()
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        return JSONResponse(
            status_code=503,
            content=HealthResponse(
                status="degraded", version=VERSION, components={"app": "ok", "database": "error"}
            ).model_dump(),
        )
    return JSONResponse(content=HealthResponse(version=VERSION).model_dump())
