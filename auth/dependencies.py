"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

Credentials arrive as an Authorization: Bearer <token> header. The token is
resolved to a Principal by AuthService on every request -- nothing about a
session is cached in process.

get_current_principal() raises Unauthenticated if the request has no valid
token. require_permission(module, code) wraps it and raises Forbidden if the
Authorizer says no. enforce() is the same check for handlers that need extra
context (the self-demotion guard on user updates).

Both helpers leave breadcrumbs on request.state for the audit middleware:
  principal        the authenticated Principal
  audit_module     the module the gate checked
  permission_used  the permission code the gate checked

Errors are core.errors exceptions; api/main.py maps them to 401/403/503.

Layer rule: no imports from api/ or audit/.
  auth/dependencies.py may import from fastapi (for Depends/Request) because
  this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, Request

from auth.models import Principal
from core.errors import Forbidden, Unauthenticated
from rbac.authorizer import RoleChange


def get_bearer_token(request: Request) -> str:
    """Return the raw token from the Authorization header or raise Unauthenticated."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthenticated("Authentication required")
    return token.strip()


def get_current_principal(request: Request) -> Principal:
    """Require authentication. Raises Unauthenticated if the token is missing or unusable.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(principal: Principal = Depends(get_current_principal)): ...
    """
    token = get_bearer_token(request)
    principal = request.app.state.auth_service.authenticate(token)
    request.state.principal = principal
    return principal


def enforce(
    request: Request,
    principal: Principal,
    module: str,
    permission: str,
    role_change: RoleChange | None = None,
) -> None:
    """Raise Forbidden unless principal may use permission on module.

    Unavailable from the Authorizer propagates unchanged -- the operation is
    refused either way.
    """
    request.state.audit_module = module
    request.state.permission_used = permission
    if not request.app.state.authorizer.authorize(principal, module, permission, role_change):
        raise Forbidden("You do not have permission to perform this action")


def require_permission(module: str, permission: str) -> Callable[..., Principal]:
    """Build a dependency that requires (module, permission).

    Use as a FastAPI dependency:
        @router.get("/users")
        def list_users(principal: Principal = Depends(require_permission("users", "R"))): ...
    """

    def dependency(request: Request, principal: Principal = Depends(get_current_principal)) -> Principal:
        enforce(request, principal, module, permission)
        return principal

    return dependency
