"""
api/routes/v1/users.py -- User management REST endpoints.

Routes:
  POST   /api/v1/users                    -- create a user            (users W)
  GET    /api/v1/users                    -- list users               (users R)
  GET    /api/v1/users/{id}               -- user detail              (users R)
  PUT    /api/v1/users/{id}               -- update fields / role     (users W)
  DELETE /api/v1/users/{id}               -- delete a user            (users D)
  GET    /api/v1/users/{id}/permissions   -- effective permissions    (roles_permissions R)

Security:
  PUT passes the requested role change to the Authorizer so the superuser
      cannot demote themselves.
  DELETE refuses to delete the caller's own account.
  Handlers set request.state.audit_before / audit_after; the audit middleware
      redacts password fields before anything is stored.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import (
    ModuleCodes,
    RolePermissions,
    UserCreate,
    UserPermissionsResponse,
    UserResponse,
    UserUpdate,
)
from auth.dependencies import enforce, get_current_principal, require_permission
from auth.models import Principal, User
from auth.store import UserStore
from auth.tokens import hash_password
from core.errors import Conflict, NotFound
from rbac.authorizer import RoleChange
from rbac.models import DELETE, READ, ROLES_MODULE, USERS_MODULE, WRITE
from rbac.store import RBACStore

router = APIRouter()


def _require_user(store: UserStore, user_id: int) -> User:
    user = store.get_by_id(user_id)
    if user is None:
        raise NotFound(f"User {user_id} not found")
    return user


def _require_role(rbac: RBACStore, role_id: int) -> None:
    if rbac.get_role(role_id) is None:
        raise NotFound(f"Role {role_id} not found")


@router.post("/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    principal: Principal = Depends(require_permission(USERS_MODULE, WRITE)),
) -> UserResponse:
    """Create a user with a bcrypt-hashed password."""
    store: UserStore = request.app.state.user_store
    _require_role(request.app.state.rbac_store, body.role_id)
    request.state.audit_after = body.model_dump()

    user_id = store.create_user(
        User(
            email=body.email,
            first_name=body.first_name,
            last_name=body.last_name,
            region=body.region,
            phone=body.phone,
            role_id=body.role_id,
            hashed_password=hash_password(body.password),
        )
    )
    return UserResponse.from_user(_require_user(store, user_id))


@router.get("/users", response_model=list[UserResponse])
def list_users(
    request: Request,
    principal: Principal = Depends(require_permission(USERS_MODULE, READ)),
) -> list[UserResponse]:
    return [UserResponse.from_user(u) for u in request.app.state.user_store.list_users()]


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(
    request: Request,
    user_id: int,
    principal: Principal = Depends(require_permission(USERS_MODULE, READ)),
) -> UserResponse:
    return UserResponse.from_user(_require_user(request.app.state.user_store, user_id))


@router.put("/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserUpdate,
    principal: Principal = Depends(get_current_principal),
) -> UserResponse:
    """Update the fields present in the body.

    The permission check runs here rather than in a dependency because the
    Authorizer needs to see the requested role change.
    """
    enforce(request, principal, USERS_MODULE, WRITE, RoleChange(target_user_id=user_id, new_role_id=body.role_id))

    store: UserStore = request.app.state.user_store
    before = _require_user(store, user_id)
    fields = body.model_dump(exclude_unset=True, exclude_none=True)
    if "role_id" in fields:
        _require_role(request.app.state.rbac_store, fields["role_id"])
    request.state.audit_before = UserResponse.from_user(before).model_dump()

    if "password" in fields:
        fields["hashed_password"] = hash_password(fields.pop("password"))
    if fields:
        store.update_user(user_id, **fields)

    after = UserResponse.from_user(_require_user(store, user_id))
    request.state.audit_after = after.model_dump()
    return after


@router.delete("/users/{user_id}", status_code=204)
def delete_user(
    request: Request,
    user_id: int,
    principal: Principal = Depends(require_permission(USERS_MODULE, DELETE)),
) -> Response:
    store: UserStore = request.app.state.user_store
    if user_id == principal.user_id:
        raise Conflict("You cannot delete your own account")
    before = _require_user(store, user_id)
    request.state.audit_before = UserResponse.from_user(before).model_dump()
    store.delete_user(user_id)
    return Response(status_code=204)


@router.get("/users/{user_id}/permissions", response_model=UserPermissionsResponse)
def get_user_permissions(
    request: Request,
    user_id: int,
    principal: Principal = Depends(require_permission(ROLES_MODULE, READ)),
) -> UserPermissionsResponse:
    """Return the modules and permission codes the user's role can use."""
    rbac: RBACStore = request.app.state.rbac_store
    user = _require_user(request.app.state.user_store, user_id)
    role = rbac.get_role(user.role_id)
    if role is None:
        raise NotFound(f"Role {user.role_id} not found")

    if rbac.is_superuser_role(role):
        modules = [
            ModuleCodes(id=m.id, name=m.name, permissions=[k.code for k in m.permissions])
            for m in rbac.list_modules()
        ]
    else:
        grouped: dict[int, ModuleCodes] = {}
        for grant in rbac.get_role_grants(role.id):
            entry = grouped.setdefault(
                grant.module.id, ModuleCodes(id=grant.module.id, name=grant.module.name, permissions=[])
            )
            entry.permissions.append(grant.permission_kind.code)
        modules = list(grouped.values())

    return UserPermissionsResponse(
        id=user.id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        role=RolePermissions(id=role.id, name=role.name, modules=modules),
    )
