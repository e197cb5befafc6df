"""
auth/permission_store.py -- SQLAlchemy Core persistence for the permission catalogue and grants.

Tables:
  permissions          -- (function_name, permission_level, application_id) catalogue.
  user_permissions     -- grant rows linking a principal to a permission.
  tenant_applications  -- which applications a tenant subscribes to. Permissions
                          reach a tenant only through these subscriptions.

Uniqueness among non-deleted rows ((function, level, application) for
permissions, (user, permission) for grants) is enforced here rather than by a
database constraint, because soft-deleted rows must not block re-creation.

Grant semantics:
  grant()   -- idempotent upsert. An existing row is flipped back to granted=True.
  revoke()  -- sets granted=False on the existing row. Returns False if none.
  replace_grants() -- soft-deletes every current row, then grants the new set.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Column, Index, MetaData, String, Table, Text, select
from sqlalchemy.engine import Engine

from auth.models import Grant, Permission, normalize_function, normalize_level, utcnow
from auth.store import make_engine, new_id

_metadata = MetaData()

_permissions = Table(
    "permissions",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("function_name", String(100), nullable=False),
    Column("permission_level", String(20), nullable=False),
    Column("display_name", String(255), nullable=False),
    Column("description", Text),
    Column("application_id", String(36), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("deleted_at", String(32)),
)

_user_permissions = Table(
    "user_permissions",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False),
    Column("permission_id", String(36), nullable=False),
    Column("granted", Boolean, nullable=False, server_default="1"),
    Column("granted_by", String(36)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("deleted_at", String(32)),
)

_tenant_applications = Table(
    "tenant_applications",
    _metadata,
    Column("tenant_id", String(36), primary_key=True),
    Column("application_id", String(36), primary_key=True),
    Column("created_at", String(32), nullable=False),
)

Index("ix_permissions_fn_level_app", _permissions.c.function_name, _permissions.c.permission_level,
      _permissions.c.application_id)
Index("ix_user_permissions_user", _user_permissions.c.user_id)


def _now_iso() -> str:
    return utcnow().isoformat()


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class PermissionStore:
    """Repository for Permission and Grant records.

    Usage:
        store = PermissionStore("sqlite:///tenantgate.db")
        perm = store.create_permission("sensors", "read", "Read sensors", app_id)
        store.grant(user_id, perm.id, granted_by=admin_id)
        grants = store.get_user_grants(user_id)
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Catalogue
    # ------------------------------------------------------------------

    def find_permission(self, function_name: str, permission_level: str, application_id: str) -> Permission | None:
        """Non-deleted permission with exactly this (function, level, application), if any."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _permissions.select().where(
                    (_permissions.c.function_name == normalize_function(function_name))
                    & (_permissions.c.permission_level == normalize_level(permission_level))
                    & (_permissions.c.application_id == application_id)
                    & _permissions.c.deleted_at.is_(None)
                )
            ).fetchone()
        return _row_to_permission(row) if row is not None else None

    def create_permission(
        self,
        function_name: str,
        permission_level: str,
        display_name: str,
        application_id: str,
        description: str | None = None,
    ) -> Permission:
        """Insert a permission. Raises ValueError for an unknown level.

        Callers check find_permission() first; this method does not.
        """
        now = utcnow()
        permission = Permission(
            id=new_id(),
            function_name=function_name,
            permission_level=permission_level,
            display_name=display_name,
            application_id=application_id,
            description=description,
            created_at=now,
            updated_at=now,
        )
        with self.engine.connect() as conn:
            conn.execute(
                _permissions.insert().values(
                    id=permission.id,
                    function_name=permission.function_name,
                    permission_level=permission.permission_level,
                    display_name=permission.display_name,
                    description=permission.description,
                    application_id=permission.application_id,
                    created_at=now.isoformat(),
                    updated_at=now.isoformat(),
                )
            )
            conn.commit()
        return permission

    def get_permission(self, permission_id: str) -> Permission | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _permissions.select().where(
                    (_permissions.c.id == permission_id) & _permissions.c.deleted_at.is_(None)
                )
            ).fetchone()
        return _row_to_permission(row) if row is not None else None

    def list_permissions(self, application_id: str | None = None) -> list[Permission]:
        query = _permissions.select().where(_permissions.c.deleted_at.is_(None))
        if application_id is not None:
            query = query.where(_permissions.c.application_id == application_id)
        query = query.order_by(_permissions.c.function_name, _permissions.c.permission_level)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_permission(r) for r in rows]

    def list_permissions_for_tenant(self, tenant_id: str) -> list[Permission]:
        """Permissions of every application the tenant subscribes to."""
        subscribed = select(_tenant_applications.c.application_id).where(
            _tenant_applications.c.tenant_id == tenant_id
        )
        with self.engine.connect() as conn:
            rows = conn.execute(
                _permissions.select()
                .where(_permissions.c.application_id.in_(subscribed) & _permissions.c.deleted_at.is_(None))
                .order_by(_permissions.c.function_name, _permissions.c.permission_level)
            ).fetchall()
        return [_row_to_permission(r) for r in rows]

    def list_functions(self) -> list[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_permissions.c.function_name)
                .where(_permissions.c.deleted_at.is_(None))
                .distinct()
                .order_by(_permissions.c.function_name)
            ).fetchall()
        return [r.function_name for r in rows]

    def list_levels(self, function_name: str) -> list[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_permissions.c.permission_level)
                .where(
                    (_permissions.c.function_name == normalize_function(function_name))
                    & _permissions.c.deleted_at.is_(None)
                )
                .distinct()
                .order_by(_permissions.c.permission_level)
            ).fetchall()
        return [r.permission_level for r in rows]

    def update_permission(
        self, permission_id: str, *, display_name: str | None = None, description: str | None = None
    ) -> Permission | None:
        fields: dict = {"updated_at": _now_iso()}
        if display_name is not None:
            fields["display_name"] = display_name.strip()
        if description is not None:
            fields["description"] = description
        with self.engine.connect() as conn:
            conn.execute(
                _permissions.update()
                .where((_permissions.c.id == permission_id) & _permissions.c.deleted_at.is_(None))
                .values(**fields)
            )
            conn.commit()
        return self.get_permission(permission_id)

    def delete_permission(self, permission_id: str) -> bool:
        """Soft delete. Grants pointing at it stop matching immediately."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _permissions.update()
                .where((_permissions.c.id == permission_id) & _permissions.c.deleted_at.is_(None))
                .values(deleted_at=_now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Tenant application subscriptions
    # ------------------------------------------------------------------

    def subscribe_tenant(self, tenant_id: str, application_id: str) -> bool:
        """Subscribe a tenant to an application. Returns False if already subscribed."""
        with self.engine.connect() as conn:
            exists = conn.execute(
                _tenant_applications.select().where(
                    (_tenant_applications.c.tenant_id == tenant_id)
                    & (_tenant_applications.c.application_id == application_id)
                )
            ).fetchone()
            if exists is not None:
                return False
            conn.execute(
                _tenant_applications.insert().values(
                    tenant_id=tenant_id, application_id=application_id, created_at=_now_iso()
                )
            )
            conn.commit()
        return True

    def list_tenant_applications(self, tenant_id: str) -> list[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_tenant_applications.c.application_id)
                .where(_tenant_applications.c.tenant_id == tenant_id)
                .order_by(_tenant_applications.c.application_id)
            ).fetchall()
        return [r.application_id for r in rows]

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    def grant(self, user_id: str, permission_id: str, granted_by: str | None = None) -> Grant:
        now = _now_iso()
        with self.engine.connect() as conn:
            row = conn.execute(
                _user_permissions.select().where(
                    (_user_permissions.c.user_id == user_id)
                    & (_user_permissions.c.permission_id == permission_id)
                    & _user_permissions.c.deleted_at.is_(None)
                )
            ).fetchone()
            if row is None:
                grant_id = new_id()
                conn.execute(
                    _user_permissions.insert().values(
                        id=grant_id,
                        user_id=user_id,
                        permission_id=permission_id,
                        granted=True,
                        granted_by=granted_by,
                        created_at=now,
                        updated_at=now,
                    )
                )
            else:
                grant_id = row.id
                conn.execute(
                    _user_permissions.update()
                    .where(_user_permissions.c.id == grant_id)
                    .values(granted=True, granted_by=granted_by, updated_at=now)
                )
            conn.commit()
            stored = conn.execute(_user_permissions.select().where(_user_permissions.c.id == grant_id)).fetchone()
        return _row_to_grant(stored)

    def revoke(self, user_id: str, permission_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _user_permissions.update()
                .where(
                    (_user_permissions.c.user_id == user_id)
                    & (_user_permissions.c.permission_id == permission_id)
                    & _user_permissions.c.deleted_at.is_(None)
                )
                .values(granted=False, updated_at=_now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    def get_user_grants(self, user_id: str) -> list[Grant]:
        """Every non-deleted grant row of a principal, granted or not, with its permission joined.

        Rows whose permission is missing or soft-deleted carry that state in
        grant.permission; the evaluator ignores them.
        """
        joined = _user_permissions.outerjoin(_permissions, _user_permissions.c.permission_id == _permissions.c.id)
        query = (
            select(
                _user_permissions,
                _permissions.c.function_name,
                _permissions.c.permission_level,
                _permissions.c.display_name,
                _permissions.c.description,
                _permissions.c.application_id,
                _permissions.c.created_at.label("p_created_at"),
                _permissions.c.updated_at.label("p_updated_at"),
                _permissions.c.deleted_at.label("p_deleted_at"),
            )
            .select_from(joined)
            .where((_user_permissions.c.user_id == user_id) & _user_permissions.c.deleted_at.is_(None))
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_grant(r, with_permission=True) for r in rows]

    def replace_grants(self, user_id: str, permission_ids: list[str], granted_by: str | None = None) -> list[Grant]:
        now = _now_iso()
        with self.engine.connect() as conn:
            conn.execute(
                _user_permissions.update()
                .where((_user_permissions.c.user_id == user_id) & _user_permissions.c.deleted_at.is_(None))
                .values(deleted_at=now, updated_at=now)
            )
            conn.commit()
        return [self.grant(user_id, pid, granted_by=granted_by) for pid in dict.fromkeys(permission_ids)]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_permission(row) -> Permission:
    return Permission(
        id=row.id,
        function_name=row.function_name,
        permission_level=row.permission_level,
        display_name=row.display_name,
        application_id=row.application_id,
        description=row.description,
        created_at=_dt(row.created_at),
        updated_at=_dt(row.updated_at),
        deleted_at=_dt(row.deleted_at),
    )


def _row_to_grant(row, with_permission: bool = False) -> Grant:
    permission = None
    if with_permission and row.function_name is not None:
        permission = Permission(
            id=row.permission_id,
            function_name=row.function_name,
            permission_level=row.permission_level,
            display_name=row.display_name,
            application_id=row.application_id,
            description=row.description,
            created_at=_dt(row.p_created_at),
            updated_at=_dt(row.p_updated_at),
            deleted_at=_dt(row.p_deleted_at),
        )
    return Grant(
        id=row.id,
        user_id=row.user_id,
        permission_id=row.permission_id,
        granted=bool(row.granted),
        granted_by=row.granted_by,
        created_at=_dt(row.created_at),
        updated_at=_dt(row.updated_at),
        deleted_at=_dt(row.deleted_at),
        permission=permission,
    )
