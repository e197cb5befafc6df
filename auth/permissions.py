"""
auth/permissions.py -- Tier and grant based authorization decisions.

The four can_* functions are pure: they take already-loaded records and return
a Decision(allowed, reason). They never touch storage, so they are trivially
testable and safe to call from anywhere. Reasons go to the audit log through
PermissionService; they are never copied into an HTTP error body.

Tier rules:
  root  -- allowed everything, in every tenant.
  admin -- allowed every function inside its own tenant. Grants are not
           consulted, so an explicit granted=False row does not restrict an
           admin. Tenant scoping is enforced separately by can_access_tenant.
  user  -- allowed a (function, level) only through a live granted=True row
           whose permission is live and matches case-insensitively.

PermissionService wraps the evaluator with the PermissionStore: it loads grants
only when the principal is a user, and it owns catalogue and grant management.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from auth.errors import Conflict, NotFound
from auth.models import (
    Decision,
    Grant,
    Permission,
    PermissionLevel,
    Principal,
    Tier,
    normalize_function,
    normalize_level,
)
from auth.permission_store import PermissionStore
from auth.store import UserStore

logger = logging.getLogger("tenantgate.auth.permissions")

# Functions a tenant can hand out to its users.
KNOWN_FUNCTIONS: tuple[str, ...] = (
    "users",
    "modules",
    "sensors",
    "machines",
    "reports",
    "settings",
    "dashboard",
    "alerts",
    "exports",
    "audit",
)

DEFAULT_USER_PERMISSIONS: tuple[tuple[str, str], ...] = (
    ("dashboard", "read"),
    ("sensors", "read"),
    ("modules", "read"),
    ("reports", "read"),
)


# ---------------------------------------------------------------------------
# Pure evaluator
# ---------------------------------------------------------------------------


def can_execute(principal: Principal, function_name: str, level: str, grants: Iterable[Grant] = ()) -> Decision:
    if principal.tier is Tier.ROOT:
        return Decision(True, "root has all permissions")
    if principal.tier is Tier.ADMIN:
        return Decision(True, "admin has all permissions within its tenant")

    fn = normalize_function(function_name)
    lvl = normalize_level(level)
    for grant in grants:
        perm = grant.permission
        if not grant.granted or grant.is_deleted or perm is None or perm.is_deleted:
            continue
        if perm.function_name == fn and perm.permission_level == lvl:
            return Decision(True, f"granted {fn}:{lvl}")
    return Decision(False, f"no active grant for {fn}:{lvl}")


def can_create_user_type(creator: Principal, target_tier: Tier | str, target_tenant_id: str | None = None) -> Decision:
    target_tier = Tier(target_tier)
    if creator.tier is Tier.ROOT:
        return Decision(True, "root can create any tier")
    if creator.tier is Tier.ADMIN:
        if target_tier is not Tier.USER:
            return Decision(False, f"admin cannot create {target_tier.value} principals")
        if target_tenant_id is not None and target_tenant_id != creator.tenant_id:
            return Decision(False, "admin cannot create principals in another tenant")
        return Decision(True, "admin can create users in its own tenant")
    return Decision(False, "users cannot create principals")


def can_manage_user(manager: Principal, target: Principal) -> Decision:
    if manager.tier is Tier.ROOT:
        return Decision(True, "root can manage any principal")
    if manager.tier is Tier.ADMIN:
        if target.tier is Tier.ROOT:
            return Decision(False, "admin cannot manage root")
        if target.tenant_id != manager.tenant_id:
            return Decision(False, "admin cannot manage principals of another tenant")
        return Decision(True, "admin manages its own tenant")
    return Decision(False, "users cannot manage principals")


def can_access_tenant(principal: Principal, tenant_id: str) -> Decision:
    if principal.tier is Tier.ROOT:
        return Decision(True, "root can access every tenant")
    if principal.tenant_id == tenant_id:
        return Decision(True, "own tenant")
    return Decision(False, "principal belongs to another tenant")


def validate_permissions(entries: Iterable[tuple[str, str]]) -> list[str]:
    """Return human-readable problems with a proposed (function, level) set; empty means valid."""
    levels = {lvl.value for lvl in PermissionLevel}
    problems: list[str] = []
    for function_name, level in entries:
        fn = normalize_function(function_name)
        lvl = normalize_level(level)
        if fn not in KNOWN_FUNCTIONS:
            problems.append(f"unknown function {fn!r}")
        if lvl not in levels:
            problems.append(f"invalid level {lvl!r} for {fn!r}")
    return problems


def group_by_function(permissions: Iterable[Permission]) -> dict[str, list[str]]:
    grouped: dict[str, list[str]] = {}
    for perm in permissions:
        grouped.setdefault(perm.function_name, []).append(perm.permission_level)
    return {fn: sorted(levels) for fn, levels in sorted(grouped.items())}


# ---------------------------------------------------------------------------
# Storage-backed service
# ---------------------------------------------------------------------------


class PermissionService:
    """Evaluator plus the permission catalogue and grant management.

    Synchronous; FastAPI runs the sync route handlers that call it in its
    threadpool.
    """

    def __init__(self, user_store: UserStore, permission_store: PermissionStore) -> None:
        self.user_store = user_store
        self.permission_store = permission_store

    @staticmethod
    def _audit(principal: Principal, action: str, decision: Decision) -> Decision:
        if decision.allowed:
            logger.debug("allow %s %s: %s", principal.id, action, decision.reason)
        else:
            logger.info("deny %s %s: %s", principal.id, action, decision.reason)
        return decision

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def check_permission(self, principal: Principal, function_name: str, level: str) -> Decision:
        grants: list[Grant] = []
        if principal.tier is Tier.USER:
            grants = self.permission_store.get_user_grants(principal.id)
        decision = can_execute(principal, function_name, level, grants)
        return self._audit(principal, f"execute {function_name}:{level}", decision)

    def check_create(self, creator: Principal, target_tier: Tier | str, target_tenant_id: str | None) -> Decision:
        decision = can_create_user_type(creator, target_tier, target_tenant_id)
        return self._audit(creator, f"create {Tier(target_tier).value}", decision)

    def check_manage(self, manager: Principal, target: Principal) -> Decision:
        return self._audit(manager, f"manage {target.id}", can_manage_user(manager, target))

    def check_tenant(self, principal: Principal, tenant_id: str) -> Decision:
        return self._audit(principal, f"access tenant {tenant_id}", can_access_tenant(principal, tenant_id))

    # ------------------------------------------------------------------
    # Catalogue
    # ------------------------------------------------------------------

    def create_permission(
        self,
        function_name: str,
        permission_level: str,
        display_name: str,
        application_id: str,
        description: str | None = None,
    ) -> Permission:
        if self.permission_store.find_permission(function_name, permission_level, application_id) is not None:
            raise Conflict("Permission already exists for this function, level and application.")
        return self.permission_store.create_permission(
            function_name, permission_level, display_name, application_id, description
        )

    def get_permission(self, permission_id: str) -> Permission:
        perm = self.permission_store.get_permission(permission_id)
        if perm is None:
            raise NotFound("Permission not found.")
        return perm

    def update_permission(
        self, permission_id: str, *, display_name: str | None = None, description: str | None = None
    ) -> Permission:
        self.get_permission(permission_id)
        updated = self.permission_store.update_permission(
            permission_id, display_name=display_name, description=description
        )
        if updated is None:
            raise NotFound("Permission not found.")
        return updated

    def delete_permission(self, permission_id: str) -> None:
        if not self.permission_store.delete_permission(permission_id):
            raise NotFound("Permission not found.")

    def list_permissions(self, application_id: str | None = None) -> list[Permission]:
        return self.permission_store.list_permissions(application_id)

    def list_permissions_for_tenant(self, tenant_id: str) -> list[Permission]:
        return self.permission_store.list_permissions_for_tenant(tenant_id)

    def list_functions(self) -> list[str]:
        return self.permission_store.list_functions()

    def list_levels(self, function_name: str) -> list[str]:
        return self.permission_store.list_levels(function_name)

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    def _target(self, user_id: str) -> Principal:
        target = self.user_store.get_user(user_id)
        if target is None or target.is_deleted:
            raise NotFound("User not found.")
        return target

    def grant(self, user_id: str, permission_id: str, granted_by: Principal) -> Grant:
        self._target(user_id)
        self.get_permission(permission_id)
        grant = self.permission_store.grant(user_id, permission_id, granted_by=granted_by.id)
        logger.info("%s granted %s to %s", granted_by.id, permission_id, user_id)
        return grant

    def revoke(self, user_id: str, permission_id: str, revoked_by: Principal) -> bool:
        self._target(user_id)
        revoked = self.permission_store.revoke(user_id, permission_id)
        if revoked:
            logger.info("%s revoked %s from %s", revoked_by.id, permission_id, user_id)
        return revoked

    def user_permissions(self, user_id: str) -> list[Permission]:
        """Live permissions a principal currently holds through granted rows."""
        self._target(user_id)
        return [
            g.permission
            for g in self.permission_store.get_user_grants(user_id)
            if g.granted and g.permission is not None and not g.permission.is_deleted
        ]

    def user_permissions_by_function(self, user_id: str) -> dict[str, list[str]]:
        return group_by_function(self.user_permissions(user_id))

    def set_user_permissions(self, user_id: str, permission_ids: list[str], granted_by: Principal) -> list[Grant]:
        self._target(user_id)
        for pid in permission_ids:
            self.get_permission(pid)
        grants = self.permission_store.replace_grants(user_id, permission_ids, granted_by=granted_by.id)
        logger.info("%s replaced permissions of %s (%d grants)", granted_by.id, user_id, len(grants))
        return grants

    def grant_defaults(self, user: Principal, application_ids: Iterable[str], granted_by: Principal) -> list[Grant]:
        """Grant DEFAULT_USER_PERMISSIONS that exist in the given applications."""
        grants: list[Grant] = []
        for app_id in application_ids:
            for fn, lvl in DEFAULT_USER_PERMISSIONS:
                perm = self.permission_store.find_permission(fn, lvl, app_id)
                if perm is not None:
                    grants.append(self.permission_store.grant(user.id, perm.id, granted_by=granted_by.id))
        return grants
