"""
auth/store.py -- SQLAlchemy Core persistence for principals, tenants and tokens.

Pattern: Repository + Data Mapper. UserStore is the repository; the _row_to_*
functions are the mappers. Services and routes never touch SQL directly.
CredentialStore is the narrow contract AuthService depends on; UserStore is its
production implementation, and tests may pass any object with the same methods.

The store is synchronous. AuthService awaits every call through
run_in_threadpool, the same way FastAPI runs sync dependencies, so the event
loop never blocks on the database.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Principals are never hard-deleted here: soft_delete_user() stamps deleted_at.
  Recovery and session tokens ARE hard-deleted once consumed or revoked.

Timestamps are stored as ISO 8601 UTC strings (String(32)) and mapped back to
aware datetimes.
"""

from __future__ import annotations

import uuid
from dataclasses import replace
from datetime import datetime
from typing import Protocol

from sqlalchemy import (
    Boolean,
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import Principal, RecoveryToken, SessionToken, Tenant, Tier, utcnow

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_tenants = Table(
    "tenants",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("deleted_at", String(32)),
)

_users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(100), nullable=False),
    Column("hashed_password", Text, nullable=False),
    Column("tier", String(10), nullable=False),  # "root" | "admin" | "user"
    Column("tenant_id", String(36)),  # NULL only for root
    Column("first_login", Boolean, nullable=False, server_default="1"),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("deleted_at", String(32)),
    Column("last_login", String(32)),
)

_refresh_tokens = Table(
    "refresh_tokens",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("token", String(500), nullable=False, unique=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("expires_in", Integer, nullable=False),  # seconds from created_at
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("deleted_at", String(32)),
)

_recovery_tokens = Table(
    "recovery_tokens",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("token", String(100), nullable=False, unique=True),
    Column("code", String(100), nullable=False),
    Column("user_id", String(36), nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("deleted_at", String(32)),
)

Index("ix_users_tenant_tier", _users.c.tenant_id, _users.c.tier)


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class CredentialStore(Protocol):
    """What AuthService needs from persistence. Keyed by principal id and by token string."""

    def get_user_by_email(self, email: str) -> Principal | None: ...

    def get_user(self, user_id: str) -> Principal | None: ...

    def update_password(self, user_id: str, hashed_password: str) -> bool: ...

    def complete_first_login(self, user_id: str) -> bool: ...

    def update_last_login(self, user_id: str) -> None: ...

    def create_refresh_token(self, record: SessionToken) -> None: ...

    def get_refresh_token(self, token: str) -> SessionToken | None: ...

    def update_refresh_token(self, record_id: str, old_token: str, new_token: str) -> bool: ...

    def delete_refresh_tokens_for_user(self, user_id: str) -> int: ...

    def create_recovery_token(self, record: RecoveryToken) -> None: ...

    def get_recovery_token(self, token: str) -> RecoveryToken | None: ...

    def delete_recovery_token(self, record_id: str) -> bool: ...

    def delete_recovery_tokens_for_user(self, user_id: str) -> int: ...


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    """Create an engine with the SQLite threading and WAL settings every store needs."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for Principal, Tenant, SessionToken and RecoveryToken records.

    Usage:
        store = UserStore("sqlite:///tenantgate.db")
        tenant = store.create_tenant("Acme")
        user = store.create_user(principal)
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Cheap connectivity check for the health endpoint."""
        with self.engine.connect() as conn:
            conn.execute(select(1)).scalar()
        return True

    # ------------------------------------------------------------------
    # Tenants
    # ------------------------------------------------------------------

    def create_tenant(self, name: str, *, tenant_id: str | None = None, is_active: bool = True) -> Tenant:
        tenant = Tenant(id=tenant_id or new_id(), name=name.strip(), is_active=is_active, created_at=utcnow())
        with self.engine.connect() as conn:
            conn.execute(
                _tenants.insert().values(
                    id=tenant.id,
                    name=tenant.name,
                    is_active=tenant.is_active,
                    created_at=_iso(tenant.created_at),
                )
            )
            conn.commit()
        return tenant

    def get_tenant(self, tenant_id: str) -> Tenant | None:
        with self.engine.connect() as conn:
            row = conn.execute(_tenants.select().where(_tenants.c.id == tenant_id)).fetchone()
        return _row_to_tenant(row) if row is not None else None

    def list_tenants(self) -> list[Tenant]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _tenants.select().where(_tenants.c.deleted_at.is_(None)).order_by(_tenants.c.name)
            ).fetchall()
        return [_row_to_tenant(r) for r in rows]

    # ------------------------------------------------------------------
    # Principals
    # ------------------------------------------------------------------

    def has_root(self) -> bool:
        """Return True if a non-deleted root principal exists (bootstrap check)."""
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count())
                .select_from(_users)
                .where((_users.c.tier == Tier.ROOT.value) & _users.c.deleted_at.is_(None))
            ).scalar()
        return (count or 0) > 0

    def create_user(self, principal: Principal) -> Principal:
        """Insert a principal and return it with timestamps filled in.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        now = utcnow()
        record = replace(principal, created_at=principal.created_at or now, updated_at=now)
        with self.engine.connect() as conn:
            conn.execute(
                _users.insert().values(
                    id=record.id,
                    email=record.email,
                    name=record.name,
                    hashed_password=record.hashed_password,
                    tier=record.tier.value,
                    tenant_id=record.tenant_id,
                    first_login=record.first_login,
                    is_active=record.is_active,
                    created_at=_iso(record.created_at),
                    updated_at=_iso(record.updated_at),
                    deleted_at=_iso(record.deleted_at),
                )
            )
            conn.commit()
        return record

    def get_user_by_email(self, email: str) -> Principal | None:
        """Look up by email, case-insensitively. Soft-deleted rows ARE returned;
        callers decide what a deleted principal means for them."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user(self, user_id: str) -> Principal | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users_by_tenant(self, tenant_id: str) -> list[Principal]:
        """Non-deleted principals of one tenant, ordered by email."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _users.select()
                .where((_users.c.tenant_id == tenant_id) & _users.c.deleted_at.is_(None))
                .order_by(_users.c.email)
            ).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_password(self, user_id: str, hashed_password: str) -> bool:
        return self._update_user(user_id, hashed_password=hashed_password)

    def complete_first_login(self, user_id: str) -> bool:
        return self._update_user(user_id, first_login=False)

    def set_active(self, user_id: str, is_active: bool) -> bool:
        return self._update_user(user_id, is_active=is_active)

    def soft_delete_user(self, user_id: str) -> bool:
        return self._update_user(user_id, deleted_at=_iso(utcnow()), is_active=False)

    def update_last_login(self, user_id: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_iso(utcnow())))
            conn.commit()

    def _update_user(self, user_id: str, **fields) -> bool:
        fields["updated_at"] = _iso(utcnow())
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Session (refresh) tokens
    # ------------------------------------------------------------------

    def create_refresh_token(self, record: SessionToken) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _refresh_tokens.insert().values(
                    id=record.id,
                    token=record.token,
                    user_id=record.user_id,
                    expires_in=record.expires_in,
                    created_at=_iso(record.created_at),
                    updated_at=_iso(record.updated_at or record.created_at),
                )
            )
            conn.commit()

    def get_refresh_token(self, token: str) -> SessionToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token == token)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def list_refresh_tokens_for_user(self, user_id: str) -> list[SessionToken]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select().where(_refresh_tokens.c.user_id == user_id)
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    def update_refresh_token(self, record_id: str, old_token: str, new_token: str) -> bool:
        """Swap old_token for new_token on a lineage record. created_at is untouched.

        Matches on the old token too, so of two rotations racing on one token
        only the first returns True.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.id == record_id) & (_refresh_tokens.c.token == old_token))
                .values(token=new_token, updated_at=_iso(utcnow()))
            )
            conn.commit()
        return result.rowcount > 0

    def delete_refresh_tokens_for_user(self, user_id: str) -> int:
        """Hard-delete every session record of a principal. Returns rows removed (0 is fine)."""
        with self.engine.connect() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Recovery tokens
    # ------------------------------------------------------------------

    def create_recovery_token(self, record: RecoveryToken) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _recovery_tokens.insert().values(
                    id=record.id,
                    token=record.token,
                    code=record.code,
                    user_id=record.user_id,
                    created_at=_iso(record.created_at),
                    expires_at=_iso(record.expires_at),
                )
            )
            conn.commit()

    def get_recovery_token(self, token: str) -> RecoveryToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_recovery_tokens.select().where(_recovery_tokens.c.token == token)).fetchone()
        return _row_to_recovery_token(row) if row is not None else None

    def list_recovery_tokens_for_user(self, user_id: str) -> list[RecoveryToken]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _recovery_tokens.select().where(_recovery_tokens.c.user_id == user_id)
            ).fetchall()
        return [_row_to_recovery_token(r) for r in rows]

    def delete_recovery_token(self, record_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_recovery_tokens.delete().where(_recovery_tokens.c.id == record_id))
            conn.commit()
        return result.rowcount > 0

    def delete_recovery_tokens_for_user(self, user_id: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_recovery_tokens.delete().where(_recovery_tokens.c.user_id == user_id))
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_tenant(row) -> Tenant:
    return Tenant(
        id=row.id,
        name=row.name,
        is_active=bool(row.is_active),
        created_at=_dt(row.created_at),
        deleted_at=_dt(row.deleted_at),
    )


def _row_to_user(row) -> Principal:
    return Principal(
        id=row.id,
        email=row.email,
        name=row.name,
        tier=Tier(row.tier),
        hashed_password=row.hashed_password,
        tenant_id=row.tenant_id,
        first_login=bool(row.first_login),
        is_active=bool(row.is_active),
        created_at=_dt(row.created_at),
        updated_at=_dt(row.updated_at),
        deleted_at=_dt(row.deleted_at),
        last_login=_dt(row.last_login),
    )


def _row_to_refresh_token(row) -> SessionToken:
    return SessionToken(
        id=row.id,
        token=row.token,
        user_id=row.user_id,
        expires_in=row.expires_in,
        created_at=_dt(row.created_at),
        updated_at=_dt(row.updated_at),
        deleted_at=_dt(row.deleted_at),
    )


def _row_to_recovery_token(row) -> RecoveryToken:
    return RecoveryToken(
        id=row.id,
        token=row.token,
        code=row.code,
        user_id=row.user_id,
        created_at=_dt(row.created_at),
        expires_at=_dt(row.expires_at),
        deleted_at=_dt(row.deleted_at),
    )
