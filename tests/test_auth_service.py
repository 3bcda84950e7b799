"""
tests/test_auth_service.py -- Unit tests for AuthService (login, logout, authenticate).
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from auth.models import User
from auth.service import AuthService
from auth.tokens import TokenAuthority, hash_password
from core.errors import InvalidCredentials, InvalidToken, RevokedToken, Unavailable


@pytest.fixture
def role_id(rbac_store) -> int:
    return rbac_store.create_role("FUNCIONARIO")


@pytest.fixture
def user(user_store, role_id) -> User:
    u = User(email="ana@warden.test", role_id=role_id, hashed_password=hash_password("s3cret!"))
    u.id = user_store.create_user(u)
    return u


@pytest.fixture
def service(settings, user_store, rbac_store) -> AuthService:
    return AuthService(user_store, rbac_store, TokenAuthority(settings, user_store))


class TestLogin:
    def test_login_returns_token_and_principal(self, service, user) -> None:
        token, principal = service.login("ana@warden.test", "s3cret!")
        assert token
        assert principal.user_id == user.id
        assert principal.role_name == "FUNCIONARIO"

    def test_wrong_password_and_unknown_email_look_the_same(self, service, user) -> None:
        with pytest.raises(InvalidCredentials) as wrong_password:
            service.login("ana@warden.test", "nope")
        with pytest.raises(InvalidCredentials) as unknown_email:
            service.login("ghost@warden.test", "s3cret!")
        assert wrong_password.value.message == unknown_email.value.message

    def test_store_failure_is_unavailable(self, settings, rbac_store) -> None:
        users = MagicMock()
        users.get_by_email.side_effect = OperationalError("SELECT", {}, Exception("database is locked"))
        service = AuthService(users, rbac_store, TokenAuthority(settings, users))
        with pytest.raises(Unavailable):
            service.login("ana@warden.test", "s3cret!")


class TestAuthenticate:
    def test_token_resolves_to_principal(self, service, user) -> None:
        token, _ = service.login("ana@warden.test", "s3cret!")
        principal = service.authenticate(token)
        assert principal.email == "ana@warden.test"
        assert principal.role_id == user.role_id

    def test_role_change_applies_to_next_request(self, service, user, user_store, rbac_store) -> None:
        token, _ = service.login("ana@warden.test", "s3cret!")
        auditor = rbac_store.create_role("AUDITOR")
        user_store.update_user(user.id, role_id=auditor)
        principal = service.authenticate(token)
        assert principal.role_id == auditor
        assert principal.role_name == "AUDITOR"

    def test_deleted_user_token_stops_working(self, service, user, user_store) -> None:
        token, _ = service.login("ana@warden.test", "s3cret!")
        user_store.delete_user(user.id)
        with pytest.raises(InvalidToken):
            service.authenticate(token)

    def test_logout_revokes(self, service, user) -> None:
        token, _ = service.login("ana@warden.test", "s3cret!")
        service.logout(token)
        with pytest.raises(RevokedToken):
            service.authenticate(token)
