"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for TenantGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_secret -> JWT_SECRET). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates missing JWT secrets
      with a warning, production mode refuses to start without them.

Security notes:
  JWT_SECRET and JWT_REFRESH_SECRET shorter than 32 chars are rejected outright.
  The two secrets must differ: an access token must never verify as a refresh
  token, and the separate keys are what guarantee that.

  In production mode (DEBUG not set or false), a missing secret is a hard
  startup failure.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("tenantgate.config")

_MIN_SECRET_LENGTH = 32
_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'tenantgate.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    database_url: str = _DEFAULT_DB_URL
    frontend_url: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    jwt_secret: str = ""
    jwt_refresh_secret: str = ""
    access_token_expire_seconds: int = Field(default=3600, gt=0)
    refresh_token_expire_seconds: int = Field(default=30 * 24 * 3600, gt=0)

    # ------------------------------------------------------------------
    # Passwords and recovery
    # ------------------------------------------------------------------

    bcrypt_rounds: int = Field(default=10, ge=4, le=16)
    recovery_token_expire_minutes: int = Field(default=15, gt=0)

    # ------------------------------------------------------------------
    # Login throttle
    # ------------------------------------------------------------------

    login_max_attempts: int = Field(default=5, gt=0)
    login_block_minutes: int = Field(default=15, gt=0)
    login_attempt_window_minutes: int = Field(default=15, gt=0)
    # "memory" keeps lockout state in this process only. "database" shares it
    # across every instance pointed at the same DATABASE_URL.
    attempt_store: Literal["memory", "database"] = "memory"

    # ------------------------------------------------------------------
    # Rate limiting (slowapi, per client IP)
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    login_rate_limit: str = "10/minute"
    refresh_rate_limit: str = "10/5minutes"
    forgot_password_rate_limit: str = "3/hour"

    # ------------------------------------------------------------------
    # Outbound mail (optional -- empty host means log-only delivery)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    mail_from: str = ""
    mail_from_name: str = "TenantGate"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_jwt_secrets(self) -> "Settings":
        """Enforce the JWT secret policy.

        Dev mode (DEBUG=true): auto-generate missing secrets with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if either secret is missing.

        Both modes: reject secrets shorter than 32 characters and reject a
            refresh secret equal to the access secret.
        """
        for name in ("jwt_secret", "jwt_refresh_secret"):
            if getattr(self, name):
                continue
            if not self.debug:
                raise ValueError(
                    f"{name.upper()} is required in production mode. "
                    "Set it in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
            setattr(self, name, secrets.token_hex(32))
            logger.warning("Using auto-generated %s. Sessions will not persist across restarts.", name.upper())

        for name in ("jwt_secret", "jwt_refresh_secret"):
            if len(getattr(self, name)) < _MIN_SECRET_LENGTH:
                raise ValueError(f"{name.upper()} must be at least {_MIN_SECRET_LENGTH} characters.")
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must be different.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings() directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
