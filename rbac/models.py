"""
rbac/models.py -- Domain dataclasses for the role/module/permission model.

Pattern: Data class (pure data container, zero logic). RBACStore owns every
rule about how these rows relate (subset invariant, soft-delete cascades);
these classes only carry shape.

Relationships are ids, never object references. A grant row stores
module_id, not a Module -- the store resolves ids at read time (ResolvedGrant).

Layer rule: no imports from api/, auth/, or audit/.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Permission catalog -- fixed, seeded once by RBACStore
# ---------------------------------------------------------------------------

READ = "R"
WRITE = "W"
EXPORT = "X"
DELETE = "D"

# (code, name, description) in seeding order
PERMISSION_CATALOG: tuple[tuple[str, str, str], ...] = (
    (READ, "Read", "View records"),
    (WRITE, "Write", "Create and edit records"),
    (EXPORT, "Export", "Export records"),
    (DELETE, "Delete", "Delete records"),
)

PERMISSION_CODES: frozenset[str] = frozenset(code for code, _, _ in PERMISSION_CATALOG)

# Module names the HTTP gate checks. Modules are matched case-insensitively.
USERS_MODULE = "users"
ROLES_MODULE = "roles_permissions"

# ---------------------------------------------------------------------------
# Soft-delete reasons
#
# Recorded next to deleted_at so restore_module() can undo exactly what
# soft_delete_module() did and nothing more.
# ---------------------------------------------------------------------------

REASON_REVOKED = "revoked"  # individually revoked by an operator
REASON_MODULE_DELETED = "module_deleted"  # cascade from soft_delete_module()
REASON_UNAVAILABLE = "unavailable"  # module stopped offering the permission


@dataclass
class PermissionKind:
    """One entry of the permission catalog (R, W, X, D)."""

    code: str
    name: str
    description: str = ""
    id: int | None = None


@dataclass
class Module:
    """A named functional area that permissions attach to.

    permissions holds the currently available PermissionKinds. It is filled
    by the store on read and ignored on write.
    """

    name: str
    description: str = ""
    id: int | None = None
    created_at: str = ""
    updated_at: str = ""
    deleted_at: str | None = None
    permissions: list[PermissionKind] = field(default_factory=list)


@dataclass
class Role:
    name: str
    description: str = ""
    id: int | None = None
    created_at: str = ""
    updated_at: str = ""


@dataclass
class ResolvedGrant:
    """A non-deleted grant row joined with its module and permission kind."""

    id: int
    role_id: int
    module: Module
    permission_kind: PermissionKind
    created_at: str


@dataclass
class ModulePermissionRequest:
    """One element of a grant request: the kinds wanted on one module."""

    module_id: int
    permission_kind_ids: list[int]
