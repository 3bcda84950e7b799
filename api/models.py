"""
API request and response models for Warden REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py,
rbac/models.py and audit/models.py, which own the internal domain
representation. Route handlers map between the two.

Separation of concerns: domain dataclasses = domain truth; api/ models = API contract.
No response model has a field for a password or password hash.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from audit.models import AuditEvent, AuditPage
from auth.models import Principal, User
from rbac.models import Module, PermissionKind, ResolvedGrant, Role

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=72)


class MeResponse(BaseModel):
    """The authenticated principal, as returned by GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    email: str
    role_id: int
    role_name: str

    @classmethod
    def from_principal(cls, principal: Principal) -> "MeResponse":
        return cls(
            user_id=principal.user_id,
            email=principal.email,
            role_id=principal.role_id,
            role_name=principal.role_name,
        )


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: MeResponse


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    """Request body for POST /api/v1/users.

    password max_length is 72 because bcrypt ignores anything past 72 bytes.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(min_length=6, max_length=72)
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    region: str = Field(default="", max_length=100)
    phone: str = Field(default="", max_length=30)
    role_id: int


class UserUpdate(BaseModel):
    """Request body for PUT /api/v1/users/{id}. Only fields that are sent are changed."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN, max_length=255)
    password: Optional[str] = Field(default=None, min_length=6, max_length=72)
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    region: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=30)
    role_id: Optional[int] = None


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    first_name: str
    last_name: str
    region: str
    phone: str
    role_id: int
    created_at: Optional[str]
    updated_at: Optional[str]

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            region=user.region,
            phone=user.phone,
            role_id=user.role_id,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class ModuleCodes(BaseModel):
    """One module and the permission codes a role holds on it."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    permissions: list[str]


class RolePermissions(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    modules: list[ModuleCodes]


class UserPermissionsResponse(BaseModel):
    """Response for GET /api/v1/users/{id}/permissions.

    For the superuser role modules lists every active module with every
    permission it offers, since the superuser is never checked against grants.
    """

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    first_name: str
    last_name: str
    role: RolePermissions


# ---------------------------------------------------------------------------
# Permission kinds and modules
# ---------------------------------------------------------------------------


class PermissionKindResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    code: str
    name: str
    description: str

    @classmethod
    def from_kind(cls, kind: PermissionKind) -> "PermissionKindResponse":
        return cls(id=kind.id, code=kind.code, name=kind.name, description=kind.description)


class ModuleCreateItem(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    description: str = Field(default="", max_length=1000)


class ModuleBatchCreate(BaseModel):
    """Request body for POST /api/v1/modules. Each new module offers all four permission kinds."""

    modules: list[ModuleCreateItem] = Field(min_length=1, max_length=50)


class ModulePermissionsUpdate(BaseModel):
    """Request body for PUT /api/v1/modules/{id}/permissions -- the complete new set."""

    permission_kind_ids: list[int] = Field(max_length=10)


class ModuleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    description: str
    created_at: str
    updated_at: str
    deleted_at: Optional[str] = None
    permissions: list[PermissionKindResponse] = Field(default_factory=list)

    @classmethod
    def from_module(cls, module: Module) -> "ModuleResponse":
        return cls(
            id=module.id,
            name=module.name,
            description=module.description,
            created_at=module.created_at,
            updated_at=module.updated_at,
            deleted_at=module.deleted_at,
            permissions=[PermissionKindResponse.from_kind(k) for k in module.permissions],
        )


# ---------------------------------------------------------------------------
# Roles and grants
# ---------------------------------------------------------------------------


class RoleCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    description: str = Field(default="", max_length=1000)


class RoleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    description: str
    created_at: str
    updated_at: str

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            description=role.description,
            created_at=role.created_at,
            updated_at=role.updated_at,
        )


class ModulePermissionItem(BaseModel):
    module_id: int
    permission_kind_ids: list[int] = Field(min_length=1, max_length=10)


class AssignPermissionsRequest(BaseModel):
    """Request body for POST /api/v1/roles/assign-permission.

    Validated as a whole: one unavailable pair rejects the entire request.
    """

    role_id: int
    modules: list[ModulePermissionItem] = Field(min_length=1, max_length=100)


class AssignPermissionsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    role_id: int
    activated: int


class GrantResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    module_id: int
    module_name: str
    permission_kind_id: int
    permission_code: str
    permission_name: str
    created_at: str

    @classmethod
    def from_grant(cls, grant: ResolvedGrant) -> "GrantResponse":
        return cls(
            id=grant.id,
            module_id=grant.module.id,
            module_name=grant.module.name,
            permission_kind_id=grant.permission_kind.id,
            permission_code=grant.permission_kind.code,
            permission_name=grant.permission_kind.name,
            created_at=grant.created_at,
        )


class RoleGrantsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: RoleResponse
    grants: list[GrantResponse]


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class AuditEventResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    occurred_at: str
    actor_user_id: Optional[int]
    actor_email: Optional[str]
    actor_role: Optional[str]
    module: str
    action: str
    permission_used: Optional[str]
    entity_type: Optional[str]
    entity_id: Optional[str]
    before_state: Optional[dict]
    after_state: Optional[dict]
    ip: Optional[str]
    user_agent: Optional[str]
    status_code: int
    path: str
    method: str

    @classmethod
    def from_event(cls, event: AuditEvent) -> "AuditEventResponse":
        return cls(
            id=event.id,
            occurred_at=event.occurred_at,
            actor_user_id=event.actor_user_id,
            actor_email=event.actor_email,
            actor_role=event.actor_role,
            module=event.module,
            action=event.action,
            permission_used=event.permission_used,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            before_state=event.before_state,
            after_state=event.after_state,
            ip=event.ip,
            user_agent=event.user_agent,
            status_code=event.status_code,
            path=event.path,
            method=event.method,
        )


class AuditPageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    page: int
    size: int
    total: int
    pages: int
    events: list[AuditEventResponse]

    @classmethod
    def from_page(cls, page: AuditPage) -> "AuditPageResponse":
        return cls(
            page=page.page,
            size=page.size,
            total=page.total,
            pages=page.pages,
            events=[AuditEventResponse.from_event(e) for e in page.events],
        )
