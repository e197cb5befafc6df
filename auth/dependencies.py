"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

Clients authenticate with an access token in the Authorization header:

    Authorization: Bearer <access_token>

get_current_principal() resolves the header through AuthService.authenticate(),
so expired and invalid tokens surface as ACCESS_TOKEN_EXPIRED and
INVALID_ACCESS_TOKEN and clients can tell "refresh silently" from "log in
again". The remaining helpers are dependency factories layered on top of it:

    require_tiers(Tier.ROOT)                 -- coarse tier gate
    require_permission("sensors", "read")    -- tier + grant check
    require_tenant_access                    -- path parameter tenant_id must be reachable

All of them raise AuthError subclasses; api/main.py maps those to the error
envelope. Decision reasons are logged by PermissionService, never returned.

Layer rule: auth/dependencies.py may import from fastapi because it is part of
the FastAPI dependency injection system. No imports from api/.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, Request
from starlette.concurrency import run_in_threadpool

from auth.errors import AuthenticationRequired, Forbidden
from auth.models import Principal, Tier


def _bearer_token(request: Request) -> str | None:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_current_principal(request: Request) -> Principal:
    """Require a valid Bearer access token and return the live principal.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(principal: Principal = Depends(get_current_principal)): ...
    """
    token = _bearer_token(request)
    if token is None:
        raise AuthenticationRequired()
    principal = await request.app.state.auth_service.authenticate(token)
    request.state.principal_id = principal.id
    return principal


def require_tiers(*tiers: Tier) -> Callable:
    """Allow only principals whose tier is one of tiers."""
    allowed = frozenset(tiers)

    async def dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.tier not in allowed:
            raise Forbidden()
        return principal

    return dependency


def require_permission(function_name: str, level: str) -> Callable:
    """Allow root, admin, and users holding a live grant for (function_name, level)."""

    async def dependency(request: Request, principal: Principal = Depends(get_current_principal)) -> Principal:
        service = request.app.state.permission_service
        decision = await run_in_threadpool(service.check_permission, principal, function_name, level)
        if not decision:
            raise Forbidden()
        return principal

    return dependency


async def require_tenant_access(
    tenant_id: str, request: Request, principal: Principal = Depends(get_current_principal)
) -> Principal:
    """Require that the principal may act inside the tenant named by the path."""
    decision = request.app.state.permission_service.check_tenant(principal, tenant_id)
    if not decision:
        raise Forbidden()
    return principal
