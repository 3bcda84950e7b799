"""
rbac/store.py -- SQLAlchemy-backed persistence for modules, roles and grants.

Uses SQLAlchemy Core (not ORM) so the dataclasses in rbac/models.py remain the
authoritative domain representation. Swapping SQLite for PostgreSQL is a
connection string change.

Pattern: Repository + Data Mapper. RBACStore is the repository; the _row_to_*
functions are the mappers. Route handlers never touch SQL directly.

Consistency rules owned here:
  Subset invariant -- a non-deleted grant always has a non-deleted
      module_permissions row for the same (module, kind) on a non-deleted
      module. grant_role_permissions() refuses pairs outside that set, and
      every operation that shrinks the set soft-deletes the grants it strands.

  Exact restore -- every soft delete writes deleted_reason next to
      deleted_at. restore_module() only reactivates rows whose reason is
      "module_deleted", so grants revoked before the module was deleted stay
      revoked.

  All-or-nothing -- every mutation runs in one engine.begin() block. Raising
      inside the block rolls back everything written so far.

  Superuser exemption -- the superuser role (name passed to the constructor)
      never appears as the subject of a grant mutation and cannot be deleted.

Uniqueness of module and role names is case-insensitive and, for modules,
only among non-deleted rows. Both are enforced in code because a partial,
case-folded unique index is not portable across SQLite and PostgreSQL.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = RBACStore()                                # SQLite default
    store = RBACStore("postgresql://user:pw@host/db")  # PostgreSQL
    [reports] = store.create_modules([("Reports", "Monthly reports")])
    role_id = store.create_role("FUNCIONARIO")
    store.grant_role_permissions(role_id, [ModulePermissionRequest(reports.id, [read_id])])
    store.has_grant(role_id, "Reports", "R")           # True
    store.close()
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from core.config import _DEFAULT_DB_URL, SUPERUSER_ROLE
from core.errors import Conflict, Forbidden, InvalidGrant, NotFound
from rbac.models import (
    PERMISSION_CATALOG,
    REASON_MODULE_DELETED,
    REASON_REVOKED,
    REASON_UNAVAILABLE,
    Module,
    ModulePermissionRequest,
    PermissionKind,
    ResolvedGrant,
    Role,
)

logger = logging.getLogger("warden.rbac")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_permission_kinds = Table(
    "permission_kinds",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(1), nullable=False, unique=True),
    Column("name", String(50), nullable=False),
    Column("description", String(255), nullable=False, server_default=""),
)

_modules = Table(
    "modules",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("deleted_at", String(32)),
)

_module_permissions = Table(
    "module_permissions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("module_id", Integer, nullable=False),
    Column("permission_kind_id", Integer, nullable=False),
    Column("deleted_at", String(32)),
    Column("deleted_reason", String(20)),
    UniqueConstraint("module_id", "permission_kind_id", name="uq_module_kind"),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False, unique=True),
    Column("description", Text, nullable=False, server_default=""),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_grants = Table(
    "role_module_permissions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("role_id", Integer, nullable=False, index=True),
    Column("module_id", Integer, nullable=False),
    Column("permission_kind_id", Integer, nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("deleted_at", String(32)),
    Column("deleted_reason", String(20)),
    UniqueConstraint("role_id", "module_id", "permission_kind_id", name="uq_role_module_kind"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so audit reads do not block grant writes."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    # Fixed precision keeps lexical order equal to chronological order.
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class RBACStore:
    """Repository for permission kinds, modules, roles and grants."""

    def __init__(self, db_url: str = _DEFAULT_DB_URL, superuser_role_name: str = SUPERUSER_ROLE) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        self.superuser_role_name = superuser_role_name
        _metadata.create_all(self.engine)
        self._ensure_permission_catalog()

    def _ensure_permission_catalog(self) -> None:
        """Insert any catalog entry (R, W, X, D) that is not present yet.

        Idempotent -- safe to call on every startup. Existing rows are never
        modified, so ids stay stable across restarts.
        """
        with self.engine.begin() as conn:
            existing = set(conn.execute(select(_permission_kinds.c.code)).scalars())
            for code, name, description in PERMISSION_CATALOG:
                if code not in existing:
                    conn.execute(_permission_kinds.insert().values(code=code, name=name, description=description))
                    logger.info("Seeded permission kind %s (%s)", code, name)

    def is_superuser_role(self, role: Role) -> bool:
        return role.name.upper() == self.superuser_role_name.upper()

    # ------------------------------------------------------------------
    # Permission catalog
    # ------------------------------------------------------------------

    def list_permission_kinds(self) -> list[PermissionKind]:
        with self.engine.connect() as conn:
            rows = conn.execute(_permission_kinds.select().order_by(_permission_kinds.c.id)).fetchall()
        return [_row_to_kind(r) for r in rows]

    def get_permission_kind_by_code(self, code: str) -> PermissionKind | None:
        with self.engine.connect() as conn:
            row = conn.execute(_permission_kinds.select().where(_permission_kinds.c.code == code.upper())).fetchone()
        return _row_to_kind(row) if row is not None else None

    # ------------------------------------------------------------------
    # Modules
    # ------------------------------------------------------------------

    def create_modules(self, items: list[tuple[str, str]]) -> list[Module]:
        """Create several modules at once, each offering the full catalog.

        Names must be unique (case-insensitive) among non-deleted modules and
        within the request itself. Raises Conflict before anything is written
        if either check fails, and ValueError for a name that is blank after
        stripping.
        """
        names = [name.strip() for name, _ in items]
        seen: set[str] = set()
        for name in names:
            if not name:
                raise ValueError("Module name must not be blank")
            if name.casefold() in seen:
                raise Conflict(f"Duplicate module name in request: {name}")
            seen.add(name.casefold())

        created_ids: list[int] = []
        with self.engine.begin() as conn:
            for name in names:
                if self._active_module_named(conn, name) is not None:
                    raise Conflict(f"A module named '{name}' already exists")
            kind_ids = list(conn.execute(select(_permission_kinds.c.id).order_by(_permission_kinds.c.id)).scalars())
            now = _now_iso()
            for name, (_, description) in zip(names, items):
                result = conn.execute(
                    _modules.insert().values(name=name, description=description or "", created_at=now, updated_at=now)
                )
                module_id = result.inserted_primary_key[0]
                for kind_id in kind_ids:
                    conn.execute(_module_permissions.insert().values(module_id=module_id, permission_kind_id=kind_id))
                created_ids.append(module_id)
        logger.info("Created %d module(s): %s", len(created_ids), ", ".join(names))
        return [m for m in (self.get_module(i) for i in created_ids) if m is not None]

    def list_modules(self) -> list[Module]:
        """Return all non-deleted modules with their available permissions."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _modules.select().where(_modules.c.deleted_at.is_(None)).order_by(_modules.c.id)
            ).fetchall()
            perms = self._available_permissions(conn, [r.id for r in rows])
        return [_row_to_module(r, perms.get(r.id, [])) for r in rows]

    def list_deleted_modules(self) -> list[Module]:
        """Return soft-deleted modules, most recently deleted first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _modules.select().where(_modules.c.deleted_at.is_not(None)).order_by(_modules.c.deleted_at.desc())
            ).fetchall()
        return [_row_to_module(r, []) for r in rows]

    def get_module(self, module_id: int) -> Module | None:
        """Look up a non-deleted module with its available permissions."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _modules.select().where((_modules.c.id == module_id) & _modules.c.deleted_at.is_(None))
            ).fetchone()
            if row is None:
                return None
            perms = self._available_permissions(conn, [row.id])
        return _row_to_module(row, perms.get(row.id, []))

    def set_module_permissions(self, module_id: int, permission_kind_ids: list[int]) -> Module:
        """Replace the available permission set of a module.

        Grants that referenced a kind leaving the set are soft-deleted with
        reason "unavailable" in the same transaction -- a grant must never be
        wider than what its module offers.
        """
        wanted = set(permission_kind_ids)
        with self.engine.begin() as conn:
            if self._active_module_row(conn, module_id) is None:
                raise NotFound(f"Module {module_id} not found")
            known = set(
                conn.execute(select(_permission_kinds.c.id).where(_permission_kinds.c.id.in_(wanted))).scalars()
            )
            if known != wanted:
                missing = ", ".join(str(i) for i in sorted(wanted - known))
                raise NotFound(f"Unknown permission kind id(s): {missing}")

            now = _now_iso()
            rows = conn.execute(
                _module_permissions.select().where(_module_permissions.c.module_id == module_id)
            ).fetchall()
            by_kind = {r.permission_kind_id: r for r in rows}
            for kind_id, row in by_kind.items():
                if kind_id not in wanted and row.deleted_at is None:
                    conn.execute(
                        _module_permissions.update()
                        .where(_module_permissions.c.id == row.id)
                        .values(deleted_at=now, deleted_reason=REASON_REVOKED)
                    )
                elif kind_id in wanted and row.deleted_at is not None:
                    conn.execute(
                        _module_permissions.update()
                        .where(_module_permissions.c.id == row.id)
                        .values(deleted_at=None, deleted_reason=None)
                    )
            for kind_id in sorted(wanted - by_kind.keys()):
                conn.execute(_module_permissions.insert().values(module_id=module_id, permission_kind_id=kind_id))

            stranded = conn.execute(
                _grants.update()
                .where(
                    (_grants.c.module_id == module_id)
                    & _grants.c.deleted_at.is_(None)
                    & _grants.c.permission_kind_id.not_in(sorted(wanted))
                )
                .values(deleted_at=now, deleted_reason=REASON_UNAVAILABLE)
            ).rowcount
            conn.execute(_modules.update().where(_modules.c.id == module_id).values(updated_at=now))

        if stranded:
            logger.info("Module %d permission change removed %d grant(s)", module_id, stranded)
        module = self.get_module(module_id)
        assert module is not None
        return module

    def remove_module_permission(self, module_id: int, permission_kind_id: int) -> None:
        """Stop offering one permission kind on a module and drop dependent grants."""
        with self.engine.begin() as conn:
            if self._active_module_row(conn, module_id) is None:
                raise NotFound(f"Module {module_id} not found")
            now = _now_iso()
            result = conn.execute(
                _module_permissions.update()
                .where(
                    (_module_permissions.c.module_id == module_id)
                    & (_module_permissions.c.permission_kind_id == permission_kind_id)
                    & _module_permissions.c.deleted_at.is_(None)
                )
                .values(deleted_at=now, deleted_reason=REASON_REVOKED)
            )
            if result.rowcount == 0:
                raise NotFound(f"Permission kind {permission_kind_id} is not available on module {module_id}")
            conn.execute(
                _grants.update()
                .where(
                    (_grants.c.module_id == module_id)
                    & (_grants.c.permission_kind_id == permission_kind_id)
                    & _grants.c.deleted_at.is_(None)
                )
                .values(deleted_at=now, deleted_reason=REASON_UNAVAILABLE)
            )
            conn.execute(_modules.update().where(_modules.c.id == module_id).values(updated_at=now))

    def soft_delete_module(self, module_id: int) -> None:
        """Soft-delete a module together with its available permissions and grants.

        Only rows that are active right now are touched, and they are tagged
        "module_deleted". Rows deleted earlier keep their original reason.
        """
        with self.engine.begin() as conn:
            if self._active_module_row(conn, module_id) is None:
                raise NotFound(f"Module {module_id} not found or already deleted")
            now = _now_iso()
            conn.execute(_modules.update().where(_modules.c.id == module_id).values(deleted_at=now, updated_at=now))
            perms = conn.execute(
                _module_permissions.update()
                .where((_module_permissions.c.module_id == module_id) & _module_permissions.c.deleted_at.is_(None))
                .values(deleted_at=now, deleted_reason=REASON_MODULE_DELETED)
            ).rowcount
            grants = conn.execute(
                _grants.update()
                .where((_grants.c.module_id == module_id) & _grants.c.deleted_at.is_(None))
                .values(deleted_at=now, deleted_reason=REASON_MODULE_DELETED)
            ).rowcount
        logger.info("Module %d deleted (%d permission row(s), %d grant(s))", module_id, perms, grants)

    def restore_module(self, module_id: int) -> Module:
        """Undo soft_delete_module() exactly.

        Raises NotFound for unknown ids, Conflict if the module is not deleted
        or if an active module has taken its name in the meantime.
        """
        with self.engine.begin() as conn:
            row = conn.execute(_modules.select().where(_modules.c.id == module_id)).fetchone()
            if row is None:
                raise NotFound(f"Module {module_id} not found")
            if row.deleted_at is None:
                raise Conflict(f"Module {module_id} is not deleted")
            if self._active_module_named(conn, row.name) is not None:
                raise Conflict(f"A module named '{row.name}' already exists")
            now = _now_iso()
            conn.execute(_modules.update().where(_modules.c.id == module_id).values(deleted_at=None, updated_at=now))
            conn.execute(
                _module_permissions.update()
                .where(
                    (_module_permissions.c.module_id == module_id)
                    & (_module_permissions.c.deleted_reason == REASON_MODULE_DELETED)
                )
                .values(deleted_at=None, deleted_reason=None)
            )
            grants = conn.execute(
                _grants.update()
                .where((_grants.c.module_id == module_id) & (_grants.c.deleted_reason == REASON_MODULE_DELETED))
                .values(deleted_at=None, deleted_reason=None)
            ).rowcount
        logger.info("Module %d restored (%d grant(s) reinstated)", module_id, grants)
        module = self.get_module(module_id)
        assert module is not None
        return module

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def create_role(self, name: str, description: str = "") -> int:
        """Insert a role and return its id. Raises Conflict on a (case-insensitive) duplicate name."""
        name = name.strip()
        if not name:
            raise ValueError("Role name must not be blank")
        now = _now_iso()
        try:
            with self.engine.begin() as conn:
                clash = conn.execute(select(_roles.c.id).where(func.lower(_roles.c.name) == name.lower())).first()
                if clash is not None:
                    raise Conflict(f"A role named '{name}' already exists")
                result = conn.execute(
                    _roles.insert().values(name=name, description=description or "", created_at=now, updated_at=now)
                )
                return result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise Conflict(f"A role named '{name}' already exists") from exc

    def ensure_role(self, name: str, description: str = "") -> int:
        """Return the id of the role with this name, creating it if needed."""
        role = self.get_role_by_name(name)
        if role is not None:
            return role.id
        return self.create_role(name, description)

    def get_role(self, role_id: int) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
        return _row_to_role(row) if row is not None else None

    def get_role_by_name(self, name: str) -> Role | None:
        """Case-insensitive lookup by role name."""
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(func.lower(_roles.c.name) == name.strip().lower())).fetchone()
        return _row_to_role(row) if row is not None else None

    def list_roles(self) -> list[Role]:
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().order_by(_roles.c.id)).fetchall()
        return [_row_to_role(r) for r in rows]

    def delete_role(self, role_id: int) -> None:
        """Hard-delete a role and every grant it holds.

        Callers must check that no user is still assigned to the role -- users
        live in auth/store.py, which this layer does not import.
        """
        with self.engine.begin() as conn:
            row = self._role_row(conn, role_id)
            if row is None:
                raise NotFound(f"Role {role_id} not found")
            if self.is_superuser_role(_row_to_role(row)):
                raise Forbidden("The superuser role cannot be deleted")
            removed = conn.execute(_grants.delete().where(_grants.c.role_id == role_id)).rowcount
            conn.execute(_roles.delete().where(_roles.c.id == role_id))
        logger.info("Role %d deleted with %d grant row(s)", role_id, removed)

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    def grant_role_permissions(self, role_id: int, requests: list[ModulePermissionRequest]) -> int:
        """Grant (module, kind) pairs to a role, all or nothing.

        Every pair is validated before the first write. One pair outside its
        module's available set raises InvalidGrant and nothing is committed.
        Already-active triples are left alone; revoked ones are reactivated.

        Returns the number of grants that became active.
        """
        pairs: list[tuple[int, int]] = []
        for req in requests:
            for kind_id in req.permission_kind_ids:
                if (req.module_id, kind_id) not in pairs:
                    pairs.append((req.module_id, kind_id))
        module_ids = {module_id for module_id, _ in pairs} | {req.module_id for req in requests}
        kind_ids = {kind_id for _, kind_id in pairs}

        try:
            with self.engine.begin() as conn:
                # FOR UPDATE serializes concurrent grant calls on one role where
                # the dialect supports row locks (no-op on SQLite).
                self._require_mutable_role(conn, role_id, lock=True)

                module_names = dict(
                    conn.execute(
                        select(_modules.c.id, _modules.c.name).where(
                            _modules.c.id.in_(module_ids) & _modules.c.deleted_at.is_(None)
                        )
                    ).all()
                )
                missing_modules = module_ids - module_names.keys()
                if missing_modules:
                    raise NotFound(f"Module {min(missing_modules)} not found")

                kind_codes = dict(
                    conn.execute(
                        select(_permission_kinds.c.id, _permission_kinds.c.code).where(
                            _permission_kinds.c.id.in_(kind_ids)
                        )
                    ).all()
                )
                missing_kinds = kind_ids - kind_codes.keys()
                if missing_kinds:
                    raise NotFound(f"Permission kind {min(missing_kinds)} not found")

                available = {
                    (r.module_id, r.permission_kind_id)
                    for r in conn.execute(
                        select(_module_permissions.c.module_id, _module_permissions.c.permission_kind_id).where(
                            _module_permissions.c.module_id.in_(module_ids)
                            & _module_permissions.c.deleted_at.is_(None)
                        )
                    )
                }
                for module_id, kind_id in pairs:
                    if (module_id, kind_id) not in available:
                        raise InvalidGrant(
                            f"Permission '{kind_codes[kind_id]}' is not available on module '{module_names[module_id]}'",
                            module_id=module_id,
                        )

                existing = {
                    (r.module_id, r.permission_kind_id): r
                    for r in conn.execute(
                        _grants.select().where((_grants.c.role_id == role_id) & _grants.c.module_id.in_(module_ids))
                    )
                }
                now = _now_iso()
                activated = 0
                for module_id, kind_id in pairs:
                    row = existing.get((module_id, kind_id))
                    if row is None:
                        conn.execute(
                            _grants.insert().values(
                                role_id=role_id,
                                module_id=module_id,
                                permission_kind_id=kind_id,
                                created_at=now,
                            )
                        )
                        activated += 1
                    elif row.deleted_at is not None:
                        conn.execute(
                            _grants.update()
                            .where(_grants.c.id == row.id)
                            .values(deleted_at=None, deleted_reason=None)
                        )
                        activated += 1
        except IntegrityError as exc:
            # Two writers inserted the same triple; the unique constraint kept one.
            raise Conflict("Concurrent permission update for this role, retry the request") from exc

        logger.info("Role %d: %d grant(s) activated from %d requested", role_id, activated, len(pairs))
        return activated

    def revoke_grant(self, role_id: int, module_id: int, permission_kind_id: int) -> None:
        """Soft-delete one grant. Raises NotFound if it was not active."""
        with self.engine.begin() as conn:
            self._require_mutable_role(conn, role_id)
            result = conn.execute(
                _grants.update()
                .where(
                    (_grants.c.role_id == role_id)
                    & (_grants.c.module_id == module_id)
                    & (_grants.c.permission_kind_id == permission_kind_id)
                    & _grants.c.deleted_at.is_(None)
                )
                .values(deleted_at=_now_iso(), deleted_reason=REASON_REVOKED)
            )
            if result.rowcount == 0:
                raise NotFound("No matching permission found for this role")

    def revoke_module_from_role(self, role_id: int, module_id: int) -> int:
        """Soft-delete every grant a role holds on one module. Returns the count."""
        with self.engine.begin() as conn:
            self._require_mutable_role(conn, role_id)
            result = conn.execute(
                _grants.update()
                .where((_grants.c.role_id == role_id) & (_grants.c.module_id == module_id) & _grants.c.deleted_at.is_(None))
                .values(deleted_at=_now_iso(), deleted_reason=REASON_REVOKED)
            )
            if result.rowcount == 0:
                raise NotFound("No permissions found for the specified module")
            return result.rowcount

    def get_role_grants(self, role_id: int) -> list[ResolvedGrant]:
        """Return all non-deleted grants of a role with module and kind details."""
        with self.engine.connect() as conn:
            if self._role_row(conn, role_id) is None:
                raise NotFound(f"Role {role_id} not found")
            rows = conn.execute(
                select(
                    _grants.c.id,
                    _grants.c.role_id,
                    _grants.c.created_at,
                    _modules.c.id.label("module_id"),
                    _modules.c.name.label("module_name"),
                    _modules.c.description.label("module_description"),
                    _modules.c.created_at.label("module_created_at"),
                    _modules.c.updated_at.label("module_updated_at"),
                    _permission_kinds.c.id.label("kind_id"),
                    _permission_kinds.c.code.label("kind_code"),
                    _permission_kinds.c.name.label("kind_name"),
                    _permission_kinds.c.description.label("kind_description"),
                )
                .select_from(
                    _grants.join(_modules, _grants.c.module_id == _modules.c.id).join(
                        _permission_kinds, _grants.c.permission_kind_id == _permission_kinds.c.id
                    )
                )
                .where((_grants.c.role_id == role_id) & _grants.c.deleted_at.is_(None))
                .order_by(_modules.c.id, _permission_kinds.c.id)
            ).fetchall()
        return [_row_to_resolved_grant(r) for r in rows]

    def has_grant(self, role_id: int, module_name: str, code: str) -> bool:
        """Return True if the role holds an active grant for (module name, code).

        The join through module_permissions re-checks the subset invariant at
        read time, so a grant can only answer True while its module still
        offers the permission.
        """
        stmt = (
            select(_grants.c.id)
            .select_from(
                _grants.join(_modules, _grants.c.module_id == _modules.c.id)
                .join(_permission_kinds, _grants.c.permission_kind_id == _permission_kinds.c.id)
                .join(
                    _module_permissions,
                    (_module_permissions.c.module_id == _grants.c.module_id)
                    & (_module_permissions.c.permission_kind_id == _grants.c.permission_kind_id),
                )
            )
            .where(
                (_grants.c.role_id == role_id)
                & (func.lower(_modules.c.name) == module_name.strip().lower())
                & (_permission_kinds.c.code == code.upper())
                & _grants.c.deleted_at.is_(None)
                & _modules.c.deleted_at.is_(None)
                & _module_permissions.c.deleted_at.is_(None)
            )
            .limit(1)
        )
        with self.engine.connect() as conn:
            return conn.execute(stmt).first() is not None

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internal lookups (run on the caller's connection)
    # ------------------------------------------------------------------

    def _active_module_row(self, conn: Connection, module_id: int):
        return conn.execute(
            _modules.select().where((_modules.c.id == module_id) & _modules.c.deleted_at.is_(None))
        ).fetchone()

    def _active_module_named(self, conn: Connection, name: str):
        return conn.execute(
            select(_modules.c.id).where(
                (func.lower(_modules.c.name) == name.strip().lower()) & _modules.c.deleted_at.is_(None)
            )
        ).first()

    def _role_row(self, conn: Connection, role_id: int, lock: bool = False):
        stmt = _roles.select().where(_roles.c.id == role_id)
        if lock:
            stmt = stmt.with_for_update()
        return conn.execute(stmt).fetchone()

    def _require_mutable_role(self, conn: Connection, role_id: int, lock: bool = False) -> None:
        """Raise NotFound for unknown roles and Forbidden for the superuser role."""
        row = self._role_row(conn, role_id, lock=lock)
        if row is None:
            raise NotFound(f"Role {role_id} not found")
        if self.is_superuser_role(_row_to_role(row)):
            raise Forbidden("The superuser role's permissions cannot be modified")

    def _available_permissions(self, conn: Connection, module_ids: list[int]) -> dict[int, list[PermissionKind]]:
        if not module_ids:
            return {}
        rows = conn.execute(
            select(_module_permissions.c.module_id, _permission_kinds)
            .select_from(
                _module_permissions.join(
                    _permission_kinds, _module_permissions.c.permission_kind_id == _permission_kinds.c.id
                )
            )
            .where(_module_permissions.c.module_id.in_(module_ids) & _module_permissions.c.deleted_at.is_(None))
            .order_by(_permission_kinds.c.id)
        ).fetchall()
        result: dict[int, list[PermissionKind]] = {}
        for r in rows:
            result.setdefault(r.module_id, []).append(_row_to_kind(r))
        return result


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_kind(row) -> PermissionKind:
    return PermissionKind(id=row.id, code=row.code, name=row.name, description=row.description or "")


def _row_to_module(row, permissions: list[PermissionKind]) -> Module:
    return Module(
        id=row.id,
        name=row.name,
        description=row.description or "",
        created_at=row.created_at,
        updated_at=row.updated_at,
        deleted_at=row.deleted_at,
        permissions=permissions,
    )


def _row_to_role(row) -> Role:
    return Role(
        id=row.id,
        name=row.name,
        description=row.description or "",
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_resolved_grant(row) -> ResolvedGrant:
    return ResolvedGrant(
        id=row.id,
        role_id=row.role_id,
        created_at=row.created_at,
        module=Module(
            id=row.module_id,
            name=row.module_name,
            description=row.module_description or "",
            created_at=row.module_created_at,
            updated_at=row.module_updated_at,
        ),
        permission_kind=PermissionKind(
            id=row.kind_id,
            code=row.kind_code,
            name=row.kind_name,
            description=row.kind_description or "",
        ),
    )
