"""
audit/store.py -- SQLAlchemy Core persistence for audit events.

Pattern: Repository + Data Mapper (same as rbac/store.py and auth/store.py).
The table is append-only: there is no update or delete method, by contract.

before_state / after_state are stored as JSON text. Reads return dicts.

Every list_* query returns an AuditPage ordered newest first (occurred_at,
then id as a tie-breaker for events recorded in the same microsecond).
page and size are clamped into range rather than rejected: page >= 1 and
1 <= size <= MAX_PAGE_SIZE.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine

from audit.models import AuditEvent, AuditPage
from core.config import _DEFAULT_DB_URL

logger = logging.getLogger("warden.audit")

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_audit_logs = Table(
    "audit_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("actor_user_id", Integer, index=True),
    Column("actor_email", String(255)),
    Column("actor_role", String(255)),
    Column("module", String(255), nullable=False, index=True),
    Column("action", String(30), nullable=False),
    Column("permission_used", String(1)),
    Column("entity_type", String(100)),
    Column("entity_id", String(100)),
    Column("before_state", Text),
    Column("after_state", Text),
    Column("ip", String(64)),
    Column("user_agent", Text),
    Column("status_code", Integer, nullable=False),
    Column("path", Text, nullable=False),
    Column("method", String(10), nullable=False),
    Column("occurred_at", String(32), nullable=False, index=True),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so worker inserts do not block queries."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def clamp_page(page: int, size: int) -> tuple[int, int]:
    """Pull page/size into the accepted range."""
    return max(1, page), min(max(1, size), MAX_PAGE_SIZE)


class AuditStore:
    """Repository for AuditEvent rows.

    Usage:
        store = AuditStore()
        store.insert(event)
        page = store.list_by_user(7, page=1, size=20)
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def insert(self, audit_event: AuditEvent) -> int:
        """Persist one event and return its id."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _audit_logs.insert().values(
                    actor_user_id=audit_event.actor_user_id,
                    actor_email=audit_event.actor_email,
                    actor_role=audit_event.actor_role,
                    module=audit_event.module,
                    action=audit_event.action,
                    permission_used=audit_event.permission_used,
                    entity_type=audit_event.entity_type,
                    entity_id=audit_event.entity_id,
                    before_state=_dump(audit_event.before_state),
                    after_state=_dump(audit_event.after_state),
                    ip=audit_event.ip,
                    user_agent=audit_event.user_agent,
                    status_code=audit_event.status_code,
                    path=audit_event.path,
                    method=audit_event.method,
                    occurred_at=audit_event.occurred_at or _now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_all(self, page: int = 1, size: int = DEFAULT_PAGE_SIZE) -> AuditPage:
        return self._page(None, page, size)

    def list_by_user(self, user_id: int, page: int = 1, size: int = DEFAULT_PAGE_SIZE) -> AuditPage:
        return self._page(_audit_logs.c.actor_user_id == user_id, page, size)

    def list_by_module(self, module: str, page: int = 1, size: int = DEFAULT_PAGE_SIZE) -> AuditPage:
        """Events recorded against a module name (case-insensitive)."""
        return self._page(func.lower(_audit_logs.c.module) == module.strip().lower(), page, size)

    def list_by_date_range(
        self, start: datetime, end: datetime, page: int = 1, size: int = DEFAULT_PAGE_SIZE
    ) -> AuditPage:
        """Events with start <= occurred_at <= end. Naive datetimes are taken as UTC."""
        condition = (_audit_logs.c.occurred_at >= _as_iso(start)) & (_audit_logs.c.occurred_at <= _as_iso(end))
        return self._page(condition, page, size)

    def list_by_filters(
        self,
        email: str | None = None,
        role: str | None = None,
        action: str | None = None,
        page: int = 1,
        size: int = DEFAULT_PAGE_SIZE,
    ) -> AuditPage:
        """Events matching every filter given. Email and role match case-insensitively."""
        condition = None
        for column, value in (
            (func.lower(_audit_logs.c.actor_email), email.lower() if email else None),
            (func.lower(_audit_logs.c.actor_role), role.lower() if role else None),
            (_audit_logs.c.action, action),
        ):
            if value:
                clause = column == value
                condition = clause if condition is None else condition & clause
        return self._page(condition, page, size)

    def _page(self, condition, page: int, size: int) -> AuditPage:
        page, size = clamp_page(page, size)
        count_stmt = select(func.count()).select_from(_audit_logs)
        rows_stmt = _audit_logs.select().order_by(_audit_logs.c.occurred_at.desc(), _audit_logs.c.id.desc())
        if condition is not None:
            count_stmt = count_stmt.where(condition)
            rows_stmt = rows_stmt.where(condition)
        rows_stmt = rows_stmt.offset((page - 1) * size).limit(size)
        with self.engine.connect() as conn:
            total = conn.execute(count_stmt).scalar() or 0
            rows = conn.execute(rows_stmt).fetchall()
        return AuditPage(page=page, size=size, total=total, events=[_row_to_event(r) for r in rows])

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Mappers
# ---------------------------------------------------------------------------


def _as_iso(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dump(state: dict | None) -> str | None:
    if state is None:
        return None
    return json.dumps(state, default=str, ensure_ascii=False)


def _load(raw: str | None) -> dict | None:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Unreadable audit state payload, returning it wrapped")
        return {"raw": raw}


def _row_to_event(row) -> AuditEvent:
    return AuditEvent(
        id=row.id,
        actor_user_id=row.actor_user_id,
        actor_email=row.actor_email,
        actor_role=row.actor_role,
        module=row.module,
        action=row.action,
        permission_used=row.permission_used,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        before_state=_load(row.before_state),
        after_state=_load(row.after_state),
        ip=row.ip,
        user_agent=row.user_agent,
        status_code=row.status_code,
        path=row.path,
        method=row.method,
        occurred_at=row.occurred_at,
    )
