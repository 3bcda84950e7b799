"""
tests/test_authorizer.py -- Unit tests for Authorizer.

Covers:
  - Superuser bypass (with zero grants)
  - Self-demotion guard: only a change of the superuser's own role to a
    different role is refused
  - Grant-based decisions for everyone else
  - Fail-closed behavior when the permission store errors
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from auth.models import Principal
from core.config import SUPERUSER_ROLE
from core.errors import Unavailable
from rbac.authorizer import Authorizer, RoleChange
from rbac.models import ModulePermissionRequest
from rbac.store import RBACStore


@pytest.fixture
def superuser(rbac_store: RBACStore) -> Principal:
    role_id = rbac_store.create_role(SUPERUSER_ROLE)
    return Principal(user_id=1, email="root@warden.test", role_id=role_id, role_name=SUPERUSER_ROLE)


@pytest.fixture
def clerk(rbac_store: RBACStore) -> Principal:
    role_id = rbac_store.create_role("FUNCIONARIO")
    return Principal(user_id=2, email="clerk@warden.test", role_id=role_id, role_name="FUNCIONARIO")


class TestSuperuser:
    def test_superuser_allowed_without_any_grant(self, settings, rbac_store, superuser) -> None:
        authorizer = Authorizer(settings, rbac_store)
        assert authorizer.authorize(superuser, "anything", "D")

    def test_superuser_match_is_case_insensitive(self, settings, rbac_store) -> None:
        authorizer = Authorizer(settings, rbac_store)
        principal = Principal(user_id=1, email="root@warden.test", role_id=1, role_name="SuperAdmin")
        assert authorizer.is_superuser(principal)

    def test_superuser_does_not_touch_the_store(self, settings, superuser) -> None:
        store = MagicMock()
        assert Authorizer(settings, store).authorize(superuser, "users", "W")
        store.has_grant.assert_not_called()

    def test_self_demotion_is_refused(self, settings, rbac_store, superuser) -> None:
        """The superuser changing their own role to another role is the one denial."""
        authorizer = Authorizer(settings, rbac_store)
        change = RoleChange(target_user_id=superuser.user_id, new_role_id=superuser.role_id + 1)
        assert not authorizer.authorize(superuser, "users", "W", role_change=change)

    def test_changing_another_users_role_is_allowed(self, settings, rbac_store, superuser) -> None:
        authorizer = Authorizer(settings, rbac_store)
        change = RoleChange(target_user_id=superuser.user_id + 10, new_role_id=superuser.role_id + 1)
        assert authorizer.authorize(superuser, "users", "W", role_change=change)

    def test_self_update_without_role_change_is_allowed(self, settings, rbac_store, superuser) -> None:
        authorizer = Authorizer(settings, rbac_store)
        assert authorizer.authorize(superuser, "users", "W", role_change=RoleChange(superuser.user_id))

    def test_self_update_keeping_the_same_role_is_allowed(self, settings, rbac_store, superuser) -> None:
        authorizer = Authorizer(settings, rbac_store)
        change = RoleChange(target_user_id=superuser.user_id, new_role_id=superuser.role_id)
        assert authorizer.authorize(superuser, "users", "W", role_change=change)


class TestGrantDecisions:
    def test_denied_without_grant(self, settings, rbac_store, clerk) -> None:
        rbac_store.create_modules([("Reports", "")])
        assert not Authorizer(settings, rbac_store).authorize(clerk, "Reports", "R")

    def test_allowed_with_grant(self, settings, rbac_store, kinds, clerk) -> None:
        [module] = rbac_store.create_modules([("Reports", "")])
        rbac_store.grant_role_permissions(clerk.role_id, [ModulePermissionRequest(module.id, [kinds["R"]])])
        authorizer = Authorizer(settings, rbac_store)
        assert authorizer.authorize(clerk, "reports", "R")
        assert not authorizer.authorize(clerk, "reports", "W")

    def test_deleted_module_grants_nothing(self, settings, rbac_store, kinds, clerk) -> None:
        [module] = rbac_store.create_modules([("Reports", "")])
        rbac_store.grant_role_permissions(clerk.role_id, [ModulePermissionRequest(module.id, [kinds["R"]])])
        rbac_store.soft_delete_module(module.id)
        assert not Authorizer(settings, rbac_store).authorize(clerk, "Reports", "R")

    def test_role_change_ignored_for_ordinary_users(self, settings, rbac_store, kinds, clerk) -> None:
        """Ordinary users are judged on their grants alone."""
        [module] = rbac_store.create_modules([("users", "")])
        rbac_store.grant_role_permissions(clerk.role_id, [ModulePermissionRequest(module.id, [kinds["W"]])])
        change = RoleChange(target_user_id=clerk.user_id, new_role_id=clerk.role_id + 5)
        assert Authorizer(settings, rbac_store).authorize(clerk, "users", "W", role_change=change)


class TestFailClosed:
    def test_store_error_raises_unavailable(self, settings, clerk) -> None:
        store = MagicMock()
        store.has_grant.side_effect = OperationalError("SELECT", {}, Exception("database is locked"))
        with pytest.raises(Unavailable):
            Authorizer(settings, store).authorize(clerk, "Reports", "R")
