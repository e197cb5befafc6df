"""
api/routes/v1/permissions.py -- Permission catalogue and grant management REST endpoints.

Catalogue (/api/v1/permissions):
  GET    /permissions                    -- list, optionally ?application_id=
  GET    /permissions/tenant             -- permissions reachable by the caller's tenant
  GET    /permissions/functions          -- distinct function names
  GET    /permissions/levels/{function}  -- levels defined for one function
  GET    /permissions/{id}
  POST   /permissions                    -- root only
  PUT    /permissions/{id}               -- root only
  DELETE /permissions/{id}               -- root only (soft delete)

Grants (/api/v1/user-permissions):
  POST /user-permissions/grant
  POST /user-permissions/revoke
  GET  /user-permissions/user/{user_id}
  GET  /user-permissions/user/{user_id}/by-function
  PUT  /user-permissions/user/{user_id}/set
  GET  /user-permissions/user/{user_id}/check?function_name=&permission_level=
  GET  /user-permissions/default
  POST /user-permissions/validate

Grant management requires can_manage_user over the target principal, so an
admin can only touch grants of its own tenant. A principal may read its own
grants. Catalogue reads only need authentication.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from api.models import (
    DecisionResponse,
    GrantRequest,
    GrantResponse,
    PermissionCreate,
    PermissionResponse,
    PermissionUpdate,
    SetPermissionsRequest,
    ValidatePermissionsRequest,
    ValidatePermissionsResponse,
)
from auth.dependencies import get_current_principal, require_tiers
from auth.errors import Forbidden, UserNotFound
from auth.models import Grant, Permission, Principal, Tier
from auth.permissions import DEFAULT_USER_PERMISSIONS, PermissionService, validate_permissions

# Auth policy:
# - catalogue reads:         requires auth
# - catalogue writes:        root only
# - grant reads:             self, or a manager per can_manage_user
# - grant writes:            a manager per can_manage_user
# - default / validate:      requires auth
router = APIRouter()

_require_root = require_tiers(Tier.ROOT)


def _service(request: Request) -> PermissionService:
    return request.app.state.permission_service


def _permission_to_response(perm: Permission) -> PermissionResponse:
    return PermissionResponse(
        id=perm.id,
        function_name=perm.function_name,
        permission_level=perm.permission_level,
        display_name=perm.display_name,
        description=perm.description,
        application_id=perm.application_id,
    )


def _grant_to_response(grant: Grant) -> GrantResponse:
    return GrantResponse(
        id=grant.id,
        user_id=grant.user_id,
        permission_id=grant.permission_id,
        granted=grant.granted,
        granted_by=grant.granted_by,
    )


def _managed_target(request: Request, manager: Principal, user_id: str, *, allow_self: bool = False) -> Principal:
    service = _service(request)
    target = service.user_store.get_user(user_id)
    if target is None or target.is_deleted:
        raise UserNotFound()
    if allow_self and target.id == manager.id:
        return target
    if not service.check_manage(manager, target):
        raise Forbidden()
    return target


# ---------------------------------------------------------------------------
# Catalogue
# ---------------------------------------------------------------------------


@router.get("/permissions", response_model=list[PermissionResponse])
def list_permissions(
    request: Request,
    application_id: Optional[str] = Query(default=None, max_length=36),
    _: Principal = Depends(get_current_principal),
) -> list[PermissionResponse]:
    return [_permission_to_response(p) for p in _service(request).list_permissions(application_id)]


@router.get("/permissions/tenant", response_model=list[PermissionResponse])
def list_tenant_permissions(
    request: Request, principal: Principal = Depends(get_current_principal)
) -> list[PermissionResponse]:
    """Permissions of the applications the caller's tenant subscribes to. Empty for root."""
    if principal.tenant_id is None:
        return []
    return [_permission_to_response(p) for p in _service(request).list_permissions_for_tenant(principal.tenant_id)]


@router.get("/permissions/functions", response_model=list[str])
def list_functions(request: Request, _: Principal = Depends(get_current_principal)) -> list[str]:
    return _service(request).list_functions()


@router.get("/permissions/levels/{function_name}", response_model=list[str])
def list_levels(request: Request, function_name: str, _: Principal = Depends(get_current_principal)) -> list[str]:
    return _service(request).list_levels(function_name)


@router.get("/permissions/{permission_id}", response_model=PermissionResponse)
def get_permission(
    request: Request, permission_id: str, _: Principal = Depends(get_current_principal)
) -> PermissionResponse:
    return _permission_to_response(_service(request).get_permission(permission_id))


@router.post("/permissions", response_model=PermissionResponse, status_code=201)
def create_permission(
    request: Request, body: PermissionCreate, _: Principal = Depends(_require_root)
) -> PermissionResponse:
    perm = _service(request).create_permission(
        body.function_name,
        body.permission_level.value,
        body.display_name,
        body.application_id,
        body.description,
    )
    return _permission_to_response(perm)


@router.put("/permissions/{permission_id}", response_model=PermissionResponse)
def update_permission(
    request: Request, permission_id: str, body: PermissionUpdate, _: Principal = Depends(_require_root)
) -> PermissionResponse:
    perm = _service(request).update_permission(
        permission_id, display_name=body.display_name, description=body.description
    )
    return _permission_to_response(perm)


@router.delete("/permissions/{permission_id}", status_code=204)
def delete_permission(request: Request, permission_id: str, _: Principal = Depends(_require_root)) -> Response:
    _service(request).delete_permission(permission_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Grants
# ---------------------------------------------------------------------------


@router.post("/user-permissions/grant", response_model=GrantResponse)
def grant_permission(
    request: Request, body: GrantRequest, manager: Principal = Depends(get_current_principal)
) -> GrantResponse:
    _managed_target(request, manager, body.user_id)
    return _grant_to_response(_service(request).grant(body.user_id, body.permission_id, manager))


@router.post("/user-permissions/revoke", response_model=DecisionResponse)
def revoke_permission(
    request: Request, body: GrantRequest, manager: Principal = Depends(get_current_principal)
) -> DecisionResponse:
    """Mark the grant as not granted. allowed=false means there was nothing to revoke."""
    _managed_target(request, manager, body.user_id)
    return DecisionResponse(allowed=_service(request).revoke(body.user_id, body.permission_id, manager))


@router.get("/user-permissions/user/{user_id}", response_model=list[PermissionResponse])
def get_user_permissions(
    request: Request, user_id: str, caller: Principal = Depends(get_current_principal)
) -> list[PermissionResponse]:
    _managed_target(request, caller, user_id, allow_self=True)
    return [_permission_to_response(p) for p in _service(request).user_permissions(user_id)]


@router.get("/user-permissions/user/{user_id}/by-function", response_model=dict[str, list[str]])
def get_user_permissions_by_function(
    request: Request, user_id: str, caller: Principal = Depends(get_current_principal)
) -> dict[str, list[str]]:
    _managed_target(request, caller, user_id, allow_self=True)
    return _service(request).user_permissions_by_function(user_id)


@router.put("/user-permissions/user/{user_id}/set", response_model=list[GrantResponse])
def set_user_permissions(
    request: Request,
    user_id: str,
    body: SetPermissionsRequest,
    manager: Principal = Depends(get_current_principal),
) -> list[GrantResponse]:
    """Replace the principal's whole grant set with permission_ids."""
    _managed_target(request, manager, user_id)
    grants = _service(request).set_user_permissions(user_id, body.permission_ids, manager)
    return [_grant_to_response(g) for g in grants]


@router.get("/user-permissions/user/{user_id}/check", response_model=DecisionResponse)
def check_user_permission(
    request: Request,
    user_id: str,
    function_name: str = Query(min_length=1, max_length=100),
    permission_level: str = Query(min_length=1, max_length=20),
    caller: Principal = Depends(get_current_principal),
) -> DecisionResponse:
    target = _managed_target(request, caller, user_id, allow_self=True)
    decision = _service(request).check_permission(target, function_name, permission_level)
    return DecisionResponse(allowed=decision.allowed)


@router.get("/user-permissions/default", response_model=list[dict[str, str]])
def default_user_permissions(_: Principal = Depends(get_current_principal)) -> list[dict[str, str]]:
    return [{"function_name": fn, "permission_level": lvl} for fn, lvl in DEFAULT_USER_PERMISSIONS]


@router.post("/user-permissions/validate", response_model=ValidatePermissionsResponse)
def validate_permission_set(
    body: ValidatePermissionsRequest, _: Principal = Depends(get_current_principal)
) -> ValidatePermissionsResponse:
    errors = validate_permissions((p.function_name, p.permission_level) for p in body.permissions)
    return ValidatePermissionsResponse(valid=not errors, errors=errors)
