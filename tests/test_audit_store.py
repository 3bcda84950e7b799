"""
tests/test_audit_store.py -- Unit tests for AuditStore queries and paging.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from audit.models import AuditEvent
from audit.store import MAX_PAGE_SIZE, AuditStore, clamp_page

_BASE = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _event(minutes: int = 0, **overrides) -> AuditEvent:
    values = {
        "module": "users",
        "action": "read",
        "method": "GET",
        "path": "/api/v1/users",
        "status_code": 200,
        "actor_user_id": 1,
        "actor_email": "admin@warden.test",
        "actor_role": "SUPERADMIN",
        "permission_used": "R",
        "occurred_at": (_BASE + timedelta(minutes=minutes)).isoformat(timespec="microseconds"),
    }
    values.update(overrides)
    return AuditEvent(**values)


class TestInsert:
    def test_states_round_trip_as_json(self, audit_store: AuditStore) -> None:
        audit_store.insert(_event(before_state={"name": "old"}, after_state={"name": "new", "tags": ["a"]}))
        [stored] = audit_store.list_all().events
        assert stored.id is not None
        assert stored.before_state == {"name": "old"}
        assert stored.after_state == {"name": "new", "tags": ["a"]}

    def test_missing_timestamp_is_filled_in(self, audit_store: AuditStore) -> None:
        audit_store.insert(_event(occurred_at=""))
        [stored] = audit_store.list_all().events
        assert stored.occurred_at


class TestPaging:
    def test_newest_first(self, audit_store: AuditStore) -> None:
        for minutes in (5, 1, 9):
            audit_store.insert(_event(minutes, path=f"/api/v1/users/{minutes}"))
        paths = [e.path for e in audit_store.list_all().events]
        assert paths == ["/api/v1/users/9", "/api/v1/users/5", "/api/v1/users/1"]

    def test_page_window_and_total(self, audit_store: AuditStore) -> None:
        for minutes in range(25):
            audit_store.insert(_event(minutes))
        page = audit_store.list_all(page=3, size=10)
        assert page.total == 25
        assert page.pages == 3
        assert len(page.events) == 5

    def test_page_past_the_end_is_empty(self, audit_store: AuditStore) -> None:
        audit_store.insert(_event())
        page = audit_store.list_all(page=5, size=10)
        assert page.total == 1 and page.events == []

    def test_clamping(self) -> None:
        assert clamp_page(0, 0) == (1, 1)
        assert clamp_page(-3, 10) == (1, 10)
        assert clamp_page(2, 10_000) == (2, MAX_PAGE_SIZE)


class TestFilters:
    def test_by_user(self, audit_store: AuditStore) -> None:
        audit_store.insert(_event(actor_user_id=1))
        audit_store.insert(_event(actor_user_id=2))
        page = audit_store.list_by_user(2)
        assert page.total == 1 and page.events[0].actor_user_id == 2

    def test_by_module_is_case_insensitive(self, audit_store: AuditStore) -> None:
        audit_store.insert(_event(module="Reports"))
        audit_store.insert(_event(module="users"))
        assert audit_store.list_by_module("reports").total == 1

    def test_by_date_range_is_inclusive(self, audit_store: AuditStore) -> None:
        for minutes in (0, 30, 60, 90):
            audit_store.insert(_event(minutes))
        page = audit_store.list_by_date_range(_BASE + timedelta(minutes=30), _BASE + timedelta(minutes=60))
        assert page.total == 2

    def test_naive_bounds_are_utc(self, audit_store: AuditStore) -> None:
        audit_store.insert(_event(0))
        naive = _BASE.replace(tzinfo=None)
        assert audit_store.list_by_date_range(naive, naive + timedelta(seconds=1)).total == 1

    def test_combined_filters(self, audit_store: AuditStore) -> None:
        audit_store.insert(_event(actor_email="clerk@warden.test", actor_role="FUNCIONARIO", action="AccessDenied"))
        audit_store.insert(_event(actor_email="clerk@warden.test", actor_role="FUNCIONARIO", action="read"))
        audit_store.insert(_event(action="AccessDenied"))

        assert audit_store.list_by_filters(email="CLERK@warden.test").total == 2
        assert audit_store.list_by_filters(role="funcionario", action="AccessDenied").total == 1
        assert audit_store.list_by_filters(action="AccessDenied").total == 2
        assert audit_store.list_by_filters().total == 3
