"""
api/routes/v1/permission_kinds.py -- The fixed permission catalog (R, W, X, D).

Routes:
  GET /api/v1/permission-kinds -- list the catalog (roles_permissions R)

The catalog is seeded by RBACStore at startup and has no write endpoints.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import PermissionKindResponse
from auth.dependencies import require_permission
from auth.models import Principal
from rbac.models import READ, ROLES_MODULE

router = APIRouter()


@router.get("/permission-kinds", response_model=list[PermissionKindResponse])
def list_permission_kinds(
    request: Request,
    principal: Principal = Depends(require_permission(ROLES_MODULE, READ)),
) -> list[PermissionKindResponse]:
    return [PermissionKindResponse.from_kind(k) for k in request.app.state.rbac_store.list_permission_kinds()]
