"""
api/routes/v1/modules.py -- Module and permission-availability endpoints.

All routes are gated on the roles_permissions module.

Routes:
  POST   /api/v1/modules                               -- batch create         (W)
  GET    /api/v1/modules                               -- active modules       (R)
  GET    /api/v1/modules/deleted                       -- soft-deleted modules (R)
  GET    /api/v1/modules/{id}                          -- module detail        (R)
  PUT    /api/v1/modules/{id}/permissions              -- replace available set (W)
  DELETE /api/v1/modules/{id}/permissions/{kind_id}    -- stop offering a kind (D)
  DELETE /api/v1/modules/{id}                          -- soft delete          (D)
  POST   /api/v1/modules/{id}/restore                  -- undo soft delete     (W)

Shrinking a module's available set or deleting the module also removes the
grants that depended on it; RBACStore does both in one transaction.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import ModuleBatchCreate, ModulePermissionsUpdate, ModuleResponse
from auth.dependencies import require_permission
from auth.models import Principal
from core.errors import NotFound
from rbac.models import DELETE, READ, ROLES_MODULE, WRITE
from rbac.store import RBACStore

router = APIRouter()


def _require_module(rbac: RBACStore, module_id: int):
    module = rbac.get_module(module_id)
    if module is None:
        raise NotFound(f"Module {module_id} not found")
    return module


@router.post("/modules", response_model=list[ModuleResponse], status_code=201)
def create_modules(
    request: Request,
    body: ModuleBatchCreate,
    principal: Principal = Depends(require_permission(ROLES_MODULE, WRITE)),
) -> list[ModuleResponse]:
    """Create one or more modules. Any duplicate name rejects the whole batch."""
    request.state.audit_after = body.model_dump()
    created = request.app.state.rbac_store.create_modules([(m.name, m.description) for m in body.modules])
    return [ModuleResponse.from_module(m) for m in created]


@router.get("/modules", response_model=list[ModuleResponse])
def list_modules(
    request: Request,
    principal: Principal = Depends(require_permission(ROLES_MODULE, READ)),
) -> list[ModuleResponse]:
    return [ModuleResponse.from_module(m) for m in request.app.state.rbac_store.list_modules()]


@router.get("/modules/deleted", response_model=list[ModuleResponse])
def list_deleted_modules(
    request: Request,
    principal: Principal = Depends(require_permission(ROLES_MODULE, READ)),
) -> list[ModuleResponse]:
    return [ModuleResponse.from_module(m) for m in request.app.state.rbac_store.list_deleted_modules()]


@router.get("/modules/{module_id}", response_model=ModuleResponse)
def get_module(
    request: Request,
    module_id: int,
    principal: Principal = Depends(require_permission(ROLES_MODULE, READ)),
) -> ModuleResponse:
    return ModuleResponse.from_module(_require_module(request.app.state.rbac_store, module_id))


@router.put("/modules/{module_id}/permissions", response_model=ModuleResponse)
def set_module_permissions(
    request: Request,
    module_id: int,
    body: ModulePermissionsUpdate,
    principal: Principal = Depends(require_permission(ROLES_MODULE, WRITE)),
) -> ModuleResponse:
    """Replace the set of permission kinds the module offers."""
    rbac: RBACStore = request.app.state.rbac_store
    request.state.audit_before = ModuleResponse.from_module(_require_module(rbac, module_id)).model_dump()
    module = rbac.set_module_permissions(module_id, body.permission_kind_ids)
    after = ModuleResponse.from_module(module)
    request.state.audit_after = after.model_dump()
    return after


@router.delete("/modules/{module_id}/permissions/{permission_kind_id}", response_model=ModuleResponse)
def remove_module_permission(
    request: Request,
    module_id: int,
    permission_kind_id: int,
    principal: Principal = Depends(require_permission(ROLES_MODULE, DELETE)),
) -> ModuleResponse:
    rbac: RBACStore = request.app.state.rbac_store
    request.state.audit_before = ModuleResponse.from_module(_require_module(rbac, module_id)).model_dump()
    rbac.remove_module_permission(module_id, permission_kind_id)
    after = ModuleResponse.from_module(_require_module(rbac, module_id))
    request.state.audit_after = after.model_dump()
    return after


@router.delete("/modules/{module_id}", status_code=204)
def delete_module(
    request: Request,
    module_id: int,
    principal: Principal = Depends(require_permission(ROLES_MODULE, DELETE)),
) -> Response:
    """Soft-delete a module with its available permissions and grants."""
    rbac: RBACStore = request.app.state.rbac_store
    request.state.audit_before = ModuleResponse.from_module(_require_module(rbac, module_id)).model_dump()
    rbac.soft_delete_module(module_id)
    return Response(status_code=204)


@router.post("/modules/{module_id}/restore", response_model=ModuleResponse)
def restore_module(
    request: Request,
    module_id: int,
    principal: Principal = Depends(require_permission(ROLES_MODULE, WRITE)),
) -> ModuleResponse:
    """Restore a soft-deleted module and exactly the rows its deletion removed."""
    after = ModuleResponse.from_module(request.app.state.rbac_store.restore_module(module_id))
    request.state.audit_after = after.model_dump()
    return after
