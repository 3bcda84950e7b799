"""
rbac/authorizer.py -- The allow/deny decision for every protected operation.

The superuser bypass lives here and nowhere else. Route handlers and
dependencies ask authorize() and act on the answer; they never compare role
names themselves.

Failure policy: a missing grant is an ordinary False. A storage failure raises
Unavailable, and the HTTP gate turns that into a rejection (fail closed).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from core.errors import Unavailable

if TYPE_CHECKING:
    from auth.models import Principal
    from core.config import Settings
    from rbac.store import RBACStore

logger = logging.getLogger("warden.rbac")


@dataclass(frozen=True)
class RoleChange:
    """A pending change of a user's role, checked by the self-demotion guard.

    new_role_id is None when the update does not touch the role at all.
    """

    target_user_id: int
    new_role_id: int | None = None


class Authorizer:
    """Decides whether a principal may use a permission on a module.

    Usage:
        authorizer = Authorizer(settings, rbac_store)
        if not authorizer.authorize(principal, "users", "W"):
            raise Forbidden(...)
    """

    def __init__(self, settings: Settings, store: RBACStore) -> None:
        self._superuser_role = settings.superuser_role_name.upper()
        self._store = store

    def is_superuser(self, principal: Principal) -> bool:
        return (principal.role_name or "").upper() == self._superuser_role

    def authorize(
        self,
        principal: Principal,
        module: str,
        permission: str,
        role_change: RoleChange | None = None,
    ) -> bool:
        """Return True if principal may perform permission on module.

        Superuser: always allowed, except changing their own role to a
        different one -- that would leave the system without an administrator
        the moment the change commits.

        Everyone else: allowed iff an active grant exists for
        (principal.role_id, module, permission). Module names match
        case-insensitively and deleted modules grant nothing.
        """
        if self.is_superuser(principal):
            if (
                role_change is not None
                and role_change.target_user_id == principal.user_id
                and role_change.new_role_id is not None
                and role_change.new_role_id != principal.role_id
            ):
                logger.warning("Superuser %s tried to change their own role", principal.email)
                return False
            return True

        try:
            allowed = self._store.has_grant(principal.role_id, module, permission)
        except SQLAlchemyError as exc:
            logger.error("Permission lookup failed for %s on %s/%s: %s", principal.email, module, permission, exc)
            raise Unavailable("Permission store unavailable") from exc

        if not allowed:
            logger.info("Denied %s (%s) %s on %s", principal.email, principal.role_name, permission, module)
        return allowed
