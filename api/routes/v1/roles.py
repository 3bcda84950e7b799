"""
api/routes/v1/roles.py -- Role and grant management REST endpoints.

All routes are gated on the roles_permissions module.

Routes:
  POST   /api/v1/roles                      -- create a role                  (W)
  GET    /api/v1/roles                      -- list roles                     (R)
  POST   /api/v1/roles/assign-permission    -- grant (module, kind) pairs     (W)
  DELETE /api/v1/roles/remove-permission    -- revoke one grant               (D)
  DELETE /api/v1/roles/remove-module        -- revoke a role's grants on one module (D)
  GET    /api/v1/roles/{id}/permissions     -- a role's active grants         (R)
  DELETE /api/v1/roles/{id}                 -- delete a role and its grants   (D)

The fixed-path DELETE routes are registered before /roles/{id} so "remove-..."
is never parsed as a role id.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import (
    AssignPermissionsRequest,
    AssignPermissionsResponse,
    GrantResponse,
    MessageResponse,
    RoleCreate,
    RoleGrantsResponse,
    RoleResponse,
)
from auth.models import Principal
from auth.dependencies import require_permission
from core.errors import Conflict, NotFound
from rbac.models import DELETE, READ, ROLES_MODULE, WRITE, ModulePermissionRequest
from rbac.store import RBACStore

router = APIRouter()


@router.post("/roles", response_model=RoleResponse, status_code=201)
def create_role(
    request: Request,
    body: RoleCreate,
    principal: Principal = Depends(require_permission(ROLES_MODULE, WRITE)),
) -> RoleResponse:
    """Create a role. Names are unique regardless of case."""
    rbac: RBACStore = request.app.state.rbac_store
    request.state.audit_after = body.model_dump()
    role_id = rbac.create_role(body.name, body.description)
    return RoleResponse.from_role(rbac.get_role(role_id))


@router.get("/roles", response_model=list[RoleResponse])
def list_roles(
    request: Request,
    principal: Principal = Depends(require_permission(ROLES_MODULE, READ)),
) -> list[RoleResponse]:
    return [RoleResponse.from_role(r) for r in request.app.state.rbac_store.list_roles()]


@router.post("/roles/assign-permission", response_model=AssignPermissionsResponse)
def assign_permissions(
    request: Request,
    body: AssignPermissionsRequest,
    principal: Principal = Depends(require_permission(ROLES_MODULE, WRITE)),
) -> AssignPermissionsResponse:
    """Grant permissions to a role, all or nothing.

    Existing grants are kept; the response counts the grants that became active.
    """
    request.state.audit_after = body.model_dump()
    activated = request.app.state.rbac_store.grant_role_permissions(
        body.role_id,
        [ModulePermissionRequest(module_id=m.module_id, permission_kind_ids=m.permission_kind_ids) for m in body.modules],
    )
    return AssignPermissionsResponse(role_id=body.role_id, activated=activated)


@router.delete("/roles/remove-permission", response_model=MessageResponse)
def remove_permission(
    request: Request,
    role_id: int,
    module_id: int,
    permission_kind_id: int,
    principal: Principal = Depends(require_permission(ROLES_MODULE, DELETE)),
) -> MessageResponse:
    request.state.audit_before = {
        "role_id": role_id,
        "module_id": module_id,
        "permission_kind_id": permission_kind_id,
    }
    request.app.state.rbac_store.revoke_grant(role_id, module_id, permission_kind_id)
    return MessageResponse(message="Permission removed.")


@router.delete("/roles/remove-module", response_model=MessageResponse)
def remove_module(
    request: Request,
    role_id: int,
    module_id: int,
    principal: Principal = Depends(require_permission(ROLES_MODULE, DELETE)),
) -> MessageResponse:
    request.state.audit_before = {"role_id": role_id, "module_id": module_id}
    removed = request.app.state.rbac_store.revoke_module_from_role(role_id, module_id)
    return MessageResponse(message=f"{removed} permission(s) removed.")


@router.get("/roles/{role_id}/permissions", response_model=RoleGrantsResponse)
def get_role_permissions(
    request: Request,
    role_id: int,
    principal: Principal = Depends(require_permission(ROLES_MODULE, READ)),
) -> RoleGrantsResponse:
    rbac: RBACStore = request.app.state.rbac_store
    grants = rbac.get_role_grants(role_id)
    return RoleGrantsResponse(
        role=RoleResponse.from_role(rbac.get_role(role_id)),
        grants=[GrantResponse.from_grant(g) for g in grants],
    )


@router.delete("/roles/{role_id}", status_code=204)
def delete_role(
    request: Request,
    role_id: int,
    principal: Principal = Depends(require_permission(ROLES_MODULE, DELETE)),
) -> Response:
    """Hard-delete a role. Refused while any user still holds it."""
    rbac: RBACStore = request.app.state.rbac_store
    role = rbac.get_role(role_id)
    if role is None:
        raise NotFound(f"Role {role_id} not found")
    assigned = request.app.state.user_store.count_by_role(role_id)
    if assigned:
        raise Conflict(f"Role '{role.name}' is still assigned to {assigned} user(s)")
    request.state.audit_before = RoleResponse.from_role(role).model_dump()
    rbac.delete_role(role_id)
    return Response(status_code=204)
