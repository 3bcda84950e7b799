"""
tests/conftest.py -- Shared test fixtures for Warden.

This module provides:
  - memory_url(): a unique named shared-memory SQLite URL
  - make_settings(): Settings with a fixed key and test-friendly limits
  - _make_test_stores(): isolated in-memory DBs for users, RBAC and audit
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_client: an ApiContext with a TestClient, a seeded superuser and a
    seeded "FUNCIONARIO" user, and tokens for both

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
wherever more than one thread touches a store -- TestClient runs sync route
handlers in a thread pool and the audit recorder writes from its own worker
threads. Plain :memory: DBs are per-connection and would present a blank
schema to each thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

Each store gets its own named DB so audit worker writes never contend for
SQLite's shared-cache table locks with the request path.

DEBUG and LOGIN_RATE_LIMIT must be set before any api/ import:
get_settings() is cached on first use, and the limiter reads it per request.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

# CRITICAL: Set env before any core/api import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, attach_services
from audit.store import AuditStore
from auth.models import User
from auth.store import UserStore
from auth.tokens import TokenAuthority, hash_password
from core.config import SUPERUSER_ROLE, Settings
from rbac.models import ROLES_MODULE, USERS_MODULE
from rbac.store import RBACStore

TEST_SECRET = "test-secret-key-with-at-least-32-characters"

ADMIN_EMAIL = "admin@warden.test"
ADMIN_PASSWORD = "adminpass123"
CLERK_EMAIL = "clerk@warden.test"
CLERK_PASSWORD = "clerkpass123"
CLERK_ROLE = "FUNCIONARIO"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def memory_url(name: str = "") -> str:
    """Return a unique named shared-memory SQLite URL."""
    return f"sqlite:///file:warden_{name}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "secret_key": TEST_SECRET,
        "audit_workers": 1,
        "audit_max_attempts": 2,
        "login_rate_limit": "1000/minute",
    }
    values.update(overrides)
    return Settings(**values)


def _make_test_stores(db_suffix: str) -> tuple[UserStore, RBACStore, AuditStore]:
    """Create isolated named shared-memory SQLite stores for test isolation.

    Args:
        db_suffix: String folded into the DB names so modules never share state.
    """
    user_store = UserStore(db_url=memory_url(f"users_{db_suffix}"))
    rbac_store = RBACStore(db_url=memory_url(f"rbac_{db_suffix}"))
    audit_store = AuditStore(db_url=memory_url(f"audit_{db_suffix}"))
    return user_store, rbac_store, audit_store


def _patch_lifespan(settings: Settings, user_store: UserStore, rbac_store: RBACStore, audit_store: AuditStore):
    """Return an async context manager that replaces the real lifespan.

    Uses the same attach_services() as production so the wiring under test is
    the real one. The sweep_task is a long-sleeping coroutine that keeps
    asyncio happy (a real asyncio.Task is required; MagicMock would fail on
    .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        attach_services(app, settings, user_store, rbac_store, audit_store)
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()
        app.state.audit_recorder.shutdown()

    return test_lifespan


@dataclass
class ApiContext:
    """Everything an API integration test needs."""

    client: TestClient
    settings: Settings
    user_store: UserStore
    rbac_store: RBACStore
    audit_store: AuditStore
    admin_id: int
    admin_token: str
    superuser_role_id: int
    clerk_id: int
    clerk_token: str
    clerk_role_id: int
    modules: dict[str, int] = field(default_factory=dict)
    kinds: dict[str, int] = field(default_factory=dict)

    def headers(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    @property
    def admin(self) -> dict[str, str]:
        return self.headers(self.admin_token)

    @property
    def clerk(self) -> dict[str, str]:
        return self.headers(self.clerk_token)

    def flush_audit(self) -> None:
        self.client.app.state.audit_recorder.flush()


# ---------------------------------------------------------------------------
# Unit-test fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def rbac_store() -> Generator[RBACStore, None, None]:
    store = RBACStore(db_url=memory_url("rbac_unit"))
    yield store
    store.close()


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = UserStore(db_url=memory_url("users_unit"))
    yield store
    store.close()


@pytest.fixture
def audit_store() -> Generator[AuditStore, None, None]:
    store = AuditStore(db_url=memory_url("audit_unit"))
    yield store
    store.close()


@pytest.fixture
def kinds(rbac_store: RBACStore) -> dict[str, int]:
    """Permission code -> id for the seeded catalog."""
    return {k.code: k.id for k in rbac_store.list_permission_kinds()}


# ---------------------------------------------------------------------------
# Module-scoped API fixture -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client(request) -> Generator[ApiContext, None, None]:
    """Yield an ApiContext for API integration tests.

    Seeds, before the client starts:
      - the SUPERADMIN role and admin@warden.test holding it
      - the FUNCIONARIO role (no grants) and clerk@warden.test holding it
      - the gate modules "users" and "roles_permissions" plus "Reports"
    """
    settings = make_settings()
    user_store, rbac_store, audit_store = _make_test_stores(request.module.__name__.rsplit(".", 1)[-1])

    superuser_role_id = rbac_store.create_role(SUPERUSER_ROLE, "Unrestricted access")
    clerk_role_id = rbac_store.create_role(CLERK_ROLE, "Front-office staff")
    modules = {
        m.name: m.id
        for m in rbac_store.create_modules(
            [(USERS_MODULE, "User management"), (ROLES_MODULE, "Roles and permissions"), ("Reports", "Reports")]
        )
    }
    kinds = {k.code: k.id for k in rbac_store.list_permission_kinds()}

    admin = User(
        email=ADMIN_EMAIL,
        first_name="Ada",
        last_name="Admin",
        role_id=superuser_role_id,
        hashed_password=hash_password(ADMIN_PASSWORD),
    )
    admin.id = user_store.create_user(admin)
    clerk = User(
        email=CLERK_EMAIL,
        first_name="Carl",
        last_name="Clerk",
        region="North",
        role_id=clerk_role_id,
        hashed_password=hash_password(CLERK_PASSWORD),
    )
    clerk.id = user_store.create_user(clerk)

    authority = TokenAuthority(settings, user_store)
    admin_token = authority.issue(admin, SUPERUSER_ROLE)
    clerk_token = authority.issue(clerk, CLERK_ROLE)

    app.router.lifespan_context = _patch_lifespan(settings, user_store, rbac_store, audit_store)

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield ApiContext(
            client=client,
            settings=settings,
            user_store=user_store,
            rbac_store=rbac_store,
            audit_store=audit_store,
            admin_id=admin.id,
            admin_token=admin_token,
            superuser_role_id=superuser_role_id,
            clerk_id=clerk.id,
            clerk_token=clerk_token,
            clerk_role_id=clerk_role_id,
            modules=modules,
            kinds=kinds,
        )

    user_store.close()
    rbac_store.close()
    audit_store.close()
