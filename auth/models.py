"""
auth/models.py -- Domain dataclasses for authentication and authorization entities.

Pattern: immutable value records. Every dataclass here is frozen; an "update"
is dataclasses.replace() followed by an explicit store call, so the database
is the single source of truth rather than an in-memory object graph. Stores
and services do the work; the only logic kept here is invariant checking and
small expiry predicates that every caller would otherwise repeat.

Timestamps are timezone-aware UTC datetimes in the domain. The stores convert
them to and from ISO 8601 strings.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Tier(str, Enum):
    """Coarse role of a principal: root is cross-tenant, admin tenant-wide, user grant-scoped."""

    ROOT = "root"
    ADMIN = "admin"
    USER = "user"


class PermissionLevel(str, Enum):
    READ = "read"
    WRITE = "write"
    UPDATE = "update"
    DELETE = "delete"


DEFAULT_SESSION_SECONDS = 30 * 24 * 3600
DEFAULT_RECOVERY_MINUTES = 15


@dataclass(frozen=True)
class Tenant:
    """Opaque scoping unit. Active/deleted flags are owned by tenant management."""

    id: str
    name: str
    is_active: bool = True
    created_at: datetime | None = None
    deleted_at: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass(frozen=True)
class Principal:
    """An identity that can authenticate.

    Tier invariant: a root principal carries no tenant; admin and user
    principals carry exactly one. Violations raise ValueError at construction
    so an inconsistent record can never reach the evaluator.

    hashed_password is never exposed by to_safe_dict().
    """

    id: str
    email: str
    name: str
    tier: Tier
    hashed_password: str
    tenant_id: str | None = None
    first_login: bool = True
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None
    last_login: datetime | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "tier", Tier(self.tier))
        object.__setattr__(self, "email", self.email.strip().lower())
        if self.tier is Tier.ROOT and self.tenant_id is not None:
            raise ValueError("root principals must not belong to a tenant")
        if self.tier is not Tier.ROOT and not self.tenant_id:
            raise ValueError(f"{self.tier.value} principals must belong to a tenant")

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def is_root(self) -> bool:
        return self.tier is Tier.ROOT

    @property
    def is_admin(self) -> bool:
        return self.tier is Tier.ADMIN

    @property
    def is_user(self) -> bool:
        return self.tier is Tier.USER

    def to_safe_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "tier": self.tier.value,
            "tenant_id": self.tenant_id,
            "first_login": self.first_login,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_login": self.last_login.isoformat() if self.last_login else None,
        }


@dataclass(frozen=True)
class SessionToken:
    """Persisted refresh token record -- the root of a principal's session lineage.

    expires_in is measured from created_at, which a refresh never moves: the
    token string is rewritten in place, the lineage keeps the start of its first login.
    """

    id: str
    token: str
    user_id: str
    created_at: datetime
    expires_in: int = DEFAULT_SESSION_SECONDS  # seconds
    updated_at: datetime | None = None
    deleted_at: datetime | None = None

    @property
    def expires_at(self) -> datetime:
        return self.created_at + timedelta(seconds=self.expires_in)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) > self.expires_at

    def is_valid(self, now: datetime | None = None) -> bool:
        return self.deleted_at is None and not self.is_expired(now)


@dataclass(frozen=True)
class RecoveryToken:
    """Single-use, time-boxed reset/activation artifact.

    token travels in a URL; code is the short numeric form for channels that
    cannot carry a link. Both are compared in constant time.
    """

    id: str
    token: str
    code: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    deleted_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) > self.expires_at

    def is_valid_token(self, token: str, now: datetime | None = None) -> bool:
        return (
            hmac.compare_digest(self.token.encode(), token.encode())
            and self.deleted_at is None
            and not self.is_expired(now)
        )

    def is_valid_code(self, code: str, now: datetime | None = None) -> bool:
        return (
            hmac.compare_digest(self.code.encode(), code.encode())
            and self.deleted_at is None
            and not self.is_expired(now)
        )


@dataclass(frozen=True)
class Permission:
    """A (function, level) capability within one application.

    function_name and permission_level are case-normalized so "Sensors"/"READ"
    and "sensors"/"read" are the same permission.
    """

    id: str
    function_name: str
    permission_level: str
    display_name: str
    application_id: str
    description: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "function_name", normalize_function(self.function_name))
        level = normalize_level(self.permission_level)
        if level not in {lvl.value for lvl in PermissionLevel}:
            raise ValueError(f"invalid permission level {self.permission_level!r}")
        object.__setattr__(self, "permission_level", level)
        object.__setattr__(self, "display_name", self.display_name.strip())

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def key(self) -> str:
        return f"{self.function_name}:{self.permission_level}"

    def matches(self, function_name: str, permission_level: str) -> bool:
        return self.function_name == normalize_function(function_name) and self.permission_level == normalize_level(
            permission_level
        )


@dataclass(frozen=True)
class Grant:
    """Links a principal to a Permission.

    granted=False is an explicit denial row; it denies exactly like an absent
    row. permission is filled in when the grant is loaded through a join.
    """

    id: str
    user_id: str
    permission_id: str
    granted: bool = True
    granted_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None
    permission: Permission | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass(frozen=True)
class LoginAttempt:
    """Process-local (or shared-store) failure counter for one login identifier."""

    key: str
    attempts: int
    last_attempt: datetime
    blocked_until: datetime | None = None

    def is_blocked(self, now: datetime | None = None) -> bool:
        return self.blocked_until is not None and (now or utcnow()) < self.blocked_until


@dataclass(frozen=True)
class Decision:
    """Outcome of an authorization check.

    reason is for audit logs and server-side diagnostics only -- it must never
    be copied into an end-user error body.
    """

    allowed: bool
    reason: str

    def __bool__(self) -> bool:
        return self.allowed


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class TokenPayload:
    principal_id: str
    email: str
    tier: Tier
    issued_at: datetime
    expires_at: datetime
    tenant_id: str | None = None
    jti: str = ""


@dataclass(frozen=True)
class LoginResult:
    principal: Principal
    tokens: TokenPair
    first_login: bool


@dataclass(frozen=True)
class ForgotPasswordResult:
    """Always carries the same generic message.

    recovery is populated only when a token was actually issued; it exists for
    programmatic callers and tests and is never rendered by the HTTP layer.
    """

    message: str
    recovery: RecoveryToken | None = field(default=None, repr=False)


def normalize_function(function_name: str) -> str:
    return function_name.strip().lower()


def normalize_level(permission_level: str | PermissionLevel) -> str:
    if isinstance(permission_level, PermissionLevel):
        return permission_level.value
    return permission_level.strip().lower()
