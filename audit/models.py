"""
audit/models.py -- Domain dataclasses for the audit trail.

AuditEvent is append-only: AuditStore exposes insert and read operations and
nothing else.
"""

from __future__ import annotations

from dataclasses import dataclass, field

ACTION_READ = "read"
ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_DELETE = "delete"
ACTION_UNKNOWN = "unknown"

# Outcome markers that replace the verb-derived action.
ACTION_LOGIN_FAILED = "LoginFailed"
ACTION_ACCESS_DENIED = "AccessDenied"


@dataclass
class AuditEvent:
    """One recorded request.

    before_state / after_state are JSON-compatible dicts that have already
    been through audit.capture.redact(). The store serializes them as-is.
    """

    module: str
    action: str
    method: str
    path: str
    status_code: int
    actor_user_id: int | None = None
    actor_email: str | None = None
    actor_role: str | None = None
    permission_used: str | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    before_state: dict | None = None
    after_state: dict | None = None
    ip: str | None = None
    user_agent: str | None = None
    occurred_at: str = ""
    id: int | None = None


@dataclass
class AuditPage:
    """One page of audit events, newest first."""

    page: int
    size: int
    total: int
    events: list[AuditEvent] = field(default_factory=list)

    @property
    def pages(self) -> int:
        return (self.total + self.size - 1) // self.size if self.size else 0
