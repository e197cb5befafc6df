"""
api/routes/v1/users.py -- Principal and tenant management REST endpoints.

Routes:
  POST  /api/v1/users                                -- create a principal and mail its activation link
  PATCH /api/v1/users/{user_id}                      -- activate, deactivate or soft-delete a principal
  GET   /api/v1/tenants                              -- list tenants (root only)
  POST  /api/v1/tenants                              -- create a tenant (root only)
  GET   /api/v1/tenants/{tenant_id}/users            -- list principals of a tenant
  GET   /api/v1/tenants/{tenant_id}/applications     -- list the tenant's application subscriptions
  POST  /api/v1/tenants/{tenant_id}/applications     -- subscribe the tenant to an application (root only)

Authorization:
  Creating a principal goes through can_create_user_type: root creates any
  tier, an admin only user-tier principals in its own tenant.
  Changing a principal goes through can_manage_user: root manages anyone, an
  admin only non-root principals of its own tenant.
  Tenant-scoped reads go through can_access_tenant (require_tenant_access).
  Denials are a bare 403 FORBIDDEN; the decision reason is only logged.

Security:
  A principal cannot deactivate or delete itself.
  Deactivating or deleting a principal revokes all of its sessions.
"""

from __future__ import annotations

import secrets

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.exc import IntegrityError
from starlette.concurrency import run_in_threadpool

from api.models import (
    ApplicationSubscribe,
    PrincipalResponse,
    TenantApplicationsResponse,
    TenantCreate,
    TenantResponse,
    UserCreate,
    UserUpdate,
)
from api.routes.v1.auth import principal_to_response
from auth.dependencies import get_current_principal, require_permission, require_tenant_access, require_tiers
from auth.errors import AuthError, Conflict, Forbidden, NotFound, UserNotFound
from auth.models import Principal, Tenant, Tier
from auth.permissions import PermissionService
from auth.store import UserStore, new_id
from auth.tokens import hash_password

# Auth policy:
# - POST  /api/v1/users:                             requires auth + can_create_user_type
# - PATCH /api/v1/users/{id}:                        requires auth + can_manage_user
# - GET   /api/v1/tenants, POST /api/v1/tenants:     root only (require_tiers)
# - GET   /api/v1/tenants/{id}/users:                tenant access + users:read
# - GET   /api/v1/tenants/{id}/applications:         tenant access
# - POST  /api/v1/tenants/{id}/applications:         root only
router = APIRouter()

_require_root = require_tiers(Tier.ROOT)
_require_users_read = require_permission("users", "read")


def _tenant_to_response(tenant: Tenant) -> TenantResponse:
    return TenantResponse(
        id=tenant.id,
        name=tenant.name,
        is_active=tenant.is_active,
        created_at=tenant.created_at.isoformat() if tenant.created_at else None,
    )


def _live_tenant(store: UserStore, tenant_id: str) -> Tenant:
    tenant = store.get_tenant(tenant_id)
    if tenant is None or tenant.is_deleted:
        raise NotFound("Tenant not found.")
    return tenant


# ---------------------------------------------------------------------------
# Principals
# ---------------------------------------------------------------------------


@router.post("/users", response_model=PrincipalResponse, status_code=201)
async def create_user(
    request: Request,
    body: UserCreate,
    background_tasks: BackgroundTasks,
    creator: Principal = Depends(get_current_principal),
) -> PrincipalResponse:
    """Create a principal with first_login=true and send it an activation link.

    An admin may omit tenant_id; the principal is then created in the admin's
    own tenant. The initial password is random and never disclosed.
    """
    store: UserStore = request.app.state.user_store
    permissions: PermissionService = request.app.state.permission_service
    target_tier = Tier(body.tier.value)

    tenant_id = body.tenant_id
    if tenant_id is None and creator.tier is Tier.ADMIN:
        tenant_id = creator.tenant_id
    if target_tier is Tier.ROOT:
        tenant_id = None

    if not permissions.check_create(creator, target_tier, tenant_id):
        raise Forbidden()
    if target_tier is not Tier.ROOT:
        if tenant_id is None:
            raise AuthError("tenant_id is required for admin and user principals.", code="TENANT_REQUIRED")
        await run_in_threadpool(_live_tenant, store, tenant_id)

    if await run_in_threadpool(store.get_user_by_email, body.email) is not None:
        raise Conflict("A user with this email already exists.")

    hashed = await run_in_threadpool(
        hash_password, secrets.token_urlsafe(32), request.app.state.settings.bcrypt_rounds
    )
    principal = Principal(
        id=new_id(),
        email=body.email,
        name=body.name,
        tier=target_tier,
        hashed_password=hashed,
        tenant_id=tenant_id,
    )
    try:
        principal = await run_in_threadpool(store.create_user, principal)
    except IntegrityError as exc:
        # Lost a race with a concurrent create for the same email.
        raise Conflict("A user with this email already exists.") from exc

    if target_tier is Tier.USER:
        app_ids = await run_in_threadpool(permissions.permission_store.list_tenant_applications, tenant_id)
        await run_in_threadpool(permissions.grant_defaults, principal, app_ids, creator)

    await request.app.state.auth_service.send_activation(principal, background_tasks)
    return principal_to_response(principal)


@router.patch("/users/{user_id}", response_model=PrincipalResponse)
def update_user(
    request: Request,
    user_id: str,
    body: UserUpdate,
    manager: Principal = Depends(get_current_principal),
) -> PrincipalResponse:
    """Change is_active or soft-delete a principal."""
    store: UserStore = request.app.state.user_store
    target = store.get_user(user_id)
    if target is None or target.is_deleted:
        raise UserNotFound()
    if not request.app.state.permission_service.check_manage(manager, target):
        raise Forbidden()

    disabling = body.deleted is True or body.is_active is False
    if disabling and target.id == manager.id:
        raise Forbidden("You cannot deactivate your own account.")

    if body.deleted:
        store.soft_delete_user(target.id)
    elif body.is_active is not None:
        store.set_active(target.id, body.is_active)
    if disabling:
        store.delete_refresh_tokens_for_user(target.id)

    return principal_to_response(store.get_user(target.id))


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


@router.get("/tenants", response_model=list[TenantResponse])
def list_tenants(request: Request, _: Principal = Depends(_require_root)) -> list[TenantResponse]:
    return [_tenant_to_response(t) for t in request.app.state.user_store.list_tenants()]


@router.post("/tenants", response_model=TenantResponse, status_code=201)
def create_tenant(request: Request, body: TenantCreate, _: Principal = Depends(_require_root)) -> TenantResponse:
    return _tenant_to_response(request.app.state.user_store.create_tenant(body.name))


@router.get("/tenants/{tenant_id}/users", response_model=list[PrincipalResponse])
def list_tenant_users(
    request: Request,
    tenant_id: str,
    _: Principal = Depends(require_tenant_access),
    __: Principal = Depends(_require_users_read),
) -> list[PrincipalResponse]:
    """List principals of a tenant. Users need the users:read grant."""
    store: UserStore = request.app.state.user_store
    _live_tenant(store, tenant_id)
    return [principal_to_response(p) for p in store.list_users_by_tenant(tenant_id)]


@router.get("/tenants/{tenant_id}/applications", response_model=TenantApplicationsResponse)
def list_tenant_applications(
    request: Request,
    tenant_id: str,
    _: Principal = Depends(require_tenant_access),
) -> TenantApplicationsResponse:
    _live_tenant(request.app.state.user_store, tenant_id)
    app_ids = request.app.state.permission_service.permission_store.list_tenant_applications(tenant_id)
    return TenantApplicationsResponse(tenant_id=tenant_id, application_ids=app_ids)


@router.post("/tenants/{tenant_id}/applications", response_model=TenantApplicationsResponse, status_code=201)
def subscribe_tenant_application(
    request: Request,
    tenant_id: str,
    body: ApplicationSubscribe,
    _: Principal = Depends(_require_root),
) -> TenantApplicationsResponse:
    _live_tenant(request.app.state.user_store, tenant_id)
    permission_store = request.app.state.permission_service.permission_store
    permission_store.subscribe_tenant(tenant_id, body.application_id)
    return TenantApplicationsResponse(
        tenant_id=tenant_id, application_ids=permission_store.list_tenant_applications(tenant_id)
    )
