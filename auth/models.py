"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Mirrors rbac/models.py
-- dataclasses own domain shape; stores and services do the work.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class User:
    """A person who can log in to Warden.

    Every user holds exactly one role (role_id). The role's name is not
    stored here -- AuthService resolves it through RBACStore when it builds a
    Principal, so renaming a role never leaves stale copies behind.

    hashed_password is a bcrypt hash. It never leaves the auth layer: the API
    response models have no field for it and audit snapshots redact it.
    """

    email: str
    role_id: int
    first_name: str = ""
    last_name: str = ""
    region: str = ""
    phone: str = ""
    id: int | None = None
    hashed_password: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(frozen=True)
class Principal:
    """The authenticated identity attached to a request.

    Built from a validated token plus a fresh user lookup, so role changes
    take effect on the next request even while old tokens are still valid.
    """

    user_id: int
    email: str
    role_id: int
    role_name: str


@dataclass(frozen=True)
class TokenClaims:
    """The verified claims of a session token.

    issued_at / expires_at are timezone-aware UTC datetimes.
    """

    user_id: int
    email: str
    role: str
    issued_at: datetime
    expires_at: datetime
