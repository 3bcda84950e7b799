"""
audit/capture.py -- Turn a finished request into an AuditEvent.

Pure functions, no I/O. The HTTP middleware collects the raw facts (method,
path, status, actor, states set by the handler) and build_event() derives
the rest:

  action           from the HTTP verb, or LoginFailed / AccessDenied when the
                   request was rejected for authentication or authorization
  permission_used  the permission the gate checked; inferred from the verb
                   when no gate ran, except on /auth/ routes, which carry
                   no permission
  module           the module the gate checked; otherwise the first path
                   segment after the API prefix
  entity_type/id   from the path (/api/v1/users/7 -> "User", "7")
  before/after     redacted of credential fields at any nesting depth
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from audit.models import (
    ACTION_ACCESS_DENIED,
    ACTION_CREATE,
    ACTION_DELETE,
    ACTION_LOGIN_FAILED,
    ACTION_READ,
    ACTION_UNKNOWN,
    ACTION_UPDATE,
    AuditEvent,
)

API_PREFIX = "/api/v1/"
AUTH_PREFIX = "/api/v1/auth/"
LOGIN_PATH = "/api/v1/auth/login"
REDACTED = "[REDACTED]"

_ACTIONS = {
    "GET": ACTION_READ,
    "POST": ACTION_CREATE,
    "PUT": ACTION_UPDATE,
    "PATCH": ACTION_UPDATE,
    "DELETE": ACTION_DELETE,
}

_INFERRED_PERMISSIONS = {
    "GET": "R",
    "POST": "W",
    "PUT": "W",
    "PATCH": "W",
    "DELETE": "D",
}

_ENTITY_TYPES = {
    "users": "User",
    "roles": "Role",
    "modules": "Module",
    "permission-kinds": "PermissionKind",
    "auth": "Session",
    "audit": "AuditLog",
}

# Compared after lower-casing the key.
_SENSITIVE_KEYS = frozenset({"password", "hashed_password", "password_hash", "contraseña", "contrasena", "token"})


def action_for_method(method: str) -> str:
    return _ACTIONS.get(method.upper(), ACTION_UNKNOWN)


def permission_for_method(method: str) -> str | None:
    return _INFERRED_PERMISSIONS.get(method.upper())


def permission_for_request(method: str, path: str) -> str | None:
    """Infer the permission for a request no gate checked. Session routes have none."""
    if path.startswith(AUTH_PREFIX):
        return None
    return permission_for_method(method)


def redact(value: Any) -> Any:
    """Return a copy of value with credential fields masked, recursively.

    Walks dicts and lists; any dict key in _SENSITIVE_KEYS has its value
    replaced by REDACTED. Other values are returned unchanged.
    """
    if isinstance(value, dict):
        return {
            key: REDACTED if str(key).lower() in _SENSITIVE_KEYS else redact(item) for key, item in value.items()
        }
    if isinstance(value, list):
        return [redact(item) for item in value]
    return value


def _segments(path: str) -> list[str]:
    if path.startswith(API_PREFIX):
        path = path[len(API_PREFIX) :]
    return [part for part in path.strip("/").split("/") if part]


def module_for_path(path: str) -> str:
    parts = _segments(path)
    return parts[0] if parts else "unknown"


def entity_for_path(path: str) -> tuple[str | None, str | None]:
    """Return (entity_type, entity_id) for a request path.

    The id is the first purely numeric segment after the resource name.
    """
    parts = _segments(path)
    if not parts:
        return None, None
    entity_type = _ENTITY_TYPES.get(parts[0])
    entity_id = next((part for part in parts[1:] if part.isdigit()), None)
    return entity_type, entity_id


def action_for_outcome(method: str, path: str, status_code: int) -> str:
    if status_code == 401 and path.rstrip("/") == LOGIN_PATH:
        return ACTION_LOGIN_FAILED
    if status_code in (401, 403):
        return ACTION_ACCESS_DENIED
    return action_for_method(method)


def build_event(
    method: str,
    path: str,
    status_code: int,
    *,
    actor_user_id: int | None = None,
    actor_email: str | None = None,
    actor_role: str | None = None,
    module: str | None = None,
    permission_used: str | None = None,
    before_state: dict | None = None,
    after_state: dict | None = None,
    ip: str | None = None,
    user_agent: str | None = None,
) -> AuditEvent:
    """Assemble a redacted AuditEvent stamped with the current UTC time."""
    entity_type, entity_id = entity_for_path(path)
    return AuditEvent(
        module=module or module_for_path(path),
        action=action_for_outcome(method, path, status_code),
        method=method.upper(),
        path=path,
        status_code=status_code,
        actor_user_id=actor_user_id,
        actor_email=actor_email,
        actor_role=actor_role,
        permission_used=permission_used or permission_for_request(method, path),
        entity_type=entity_type,
        entity_id=entity_id,
        before_state=redact(before_state) if before_state is not None else None,
        after_state=redact(after_state) if after_state is not None else None,
        ip=ip,
        user_agent=user_agent,
        occurred_at=datetime.now(timezone.utc).isoformat(timespec="microseconds"),
    )
