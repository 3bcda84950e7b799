"""
tests/test_tokens.py -- Unit tests for password hashing and TokenAuthority.

Time is driven by a FakeClock so expiry tests never sleep.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from jose import jwt
from sqlalchemy.exc import OperationalError

from auth.models import User
from auth.store import UserStore
from auth.tokens import TokenAuthority, authenticate_user, hash_password, verify_password
from core.errors import ExpiredToken, InvalidToken, RevokedToken, Unauthenticated, Unavailable
from tests.conftest import TEST_SECRET, make_settings


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime.now(timezone.utc).replace(microsecond=0))


@pytest.fixture
def user(user_store: UserStore) -> User:
    u = User(email="ana@warden.test", role_id=3, first_name="Ana", hashed_password=hash_password("s3cret!"))
    u.id = user_store.create_user(u)
    return u


@pytest.fixture
def authority(settings, user_store, clock) -> TokenAuthority:
    return TokenAuthority(settings, user_store, clock=clock)


class TestPasswords:
    def test_hash_and_verify(self) -> None:
        hashed = hash_password("s3cret!")
        assert hashed != "s3cret!"
        assert verify_password("s3cret!", hashed)
        assert not verify_password("wrong", hashed)

    def test_malformed_hash_is_a_mismatch(self) -> None:
        assert verify_password("s3cret!", "not-a-bcrypt-hash") is False

    def test_authenticate_user(self, user_store, user) -> None:
        assert authenticate_user(user_store, "ana@warden.test", "s3cret!").id == user.id
        assert authenticate_user(user_store, "ANA@warden.test", "s3cret!") is not None
        assert authenticate_user(user_store, "ana@warden.test", "nope") is None
        assert authenticate_user(user_store, "ghost@warden.test", "s3cret!") is None


class TestIssueAndValidate:
    def test_claims_round_trip(self, authority, user, clock) -> None:
        token = authority.issue(user, "FUNCIONARIO")
        claims = authority.validate(token)
        assert claims.user_id == user.id
        assert claims.email == "ana@warden.test"
        assert claims.role == "FUNCIONARIO"
        assert claims.issued_at == clock.now
        assert claims.expires_at == clock.now + timedelta(hours=24)

    def test_lifetime_follows_settings(self, user_store, user, clock) -> None:
        authority = TokenAuthority(make_settings(token_expire_hours=2), user_store, clock=clock)
        claims = authority.validate(authority.issue(user, "FUNCIONARIO"))
        assert claims.expires_at - claims.issued_at == timedelta(hours=2)

    def test_tokens_issued_together_are_distinct(self, authority, user) -> None:
        assert authority.issue(user, "FUNCIONARIO") != authority.issue(user, "FUNCIONARIO")

    def test_expired_token_rejected(self, authority, user, clock) -> None:
        token = authority.issue(user, "FUNCIONARIO")
        clock.advance(hours=24)
        with pytest.raises(ExpiredToken):
            authority.validate(token)

    def test_token_valid_just_before_expiry(self, authority, user, clock) -> None:
        token = authority.issue(user, "FUNCIONARIO")
        clock.advance(hours=23, minutes=59, seconds=59)
        assert authority.validate(token).user_id == user.id

    def test_wrong_signature_rejected(self, authority, user, user_store, clock) -> None:
        other = TokenAuthority(make_settings(secret_key="another-secret-key-of-at-least-32-chars"), user_store, clock)
        with pytest.raises(InvalidToken):
            authority.validate(other.issue(user, "FUNCIONARIO"))

    def test_garbage_rejected(self, authority) -> None:
        with pytest.raises(InvalidToken):
            authority.validate("not.a.jwt")

    def test_missing_claims_rejected(self, authority, clock) -> None:
        token = jwt.encode(
            {"sub": "ana@warden.test", "exp": int((clock.now + timedelta(hours=1)).timestamp())},
            TEST_SECRET,
            algorithm="HS256",
        )
        with pytest.raises(InvalidToken):
            authority.validate(token)

    def test_all_failures_are_unauthenticated(self) -> None:
        for exc_type in (InvalidToken, ExpiredToken, RevokedToken):
            assert issubclass(exc_type, Unauthenticated)

    def test_forged_or_expired_tokens_never_hit_the_store(self, settings, user, clock) -> None:
        store = MagicMock()
        authority = TokenAuthority(settings, store, clock=clock)
        token = authority.issue(user, "FUNCIONARIO")
        clock.advance(days=2)
        with pytest.raises(ExpiredToken):
            authority.validate(token)
        with pytest.raises(InvalidToken):
            authority.validate("forged")
        store.is_token_blacklisted.assert_not_called()

    def test_blacklist_failure_is_unavailable(self, settings, user, clock) -> None:
        store = MagicMock()
        store.is_token_blacklisted.side_effect = OperationalError("SELECT", {}, Exception("disk I/O error"))
        authority = TokenAuthority(settings, store, clock=clock)
        with pytest.raises(Unavailable):
            authority.validate(authority.issue(user, "FUNCIONARIO"))


class TestRevocation:
    def test_revoked_token_rejected(self, authority, user) -> None:
        token = authority.issue(user, "FUNCIONARIO")
        assert authority.revoke(token) is True
        with pytest.raises(RevokedToken):
            authority.validate(token)

    def test_revoke_is_idempotent(self, authority, user) -> None:
        token = authority.issue(user, "FUNCIONARIO")
        assert authority.revoke(token) is True
        assert authority.revoke(token) is False
        with pytest.raises(RevokedToken):
            authority.validate(token)

    def test_revoking_one_session_leaves_another_valid(self, authority, user) -> None:
        first = authority.issue(user, "FUNCIONARIO")
        second = authority.issue(user, "FUNCIONARIO")
        authority.revoke(first)
        assert authority.validate(second).user_id == user.id

    def test_revoke_rejects_forged_tokens(self, authority, user_store) -> None:
        with pytest.raises(InvalidToken):
            authority.revoke("forged")

    def test_revoking_an_expired_token_writes_nothing(self, authority, user, user_store, clock) -> None:
        token = authority.issue(user, "FUNCIONARIO")
        clock.advance(hours=25)
        assert authority.revoke(token) is False
        assert not user_store.is_token_blacklisted(token)

    def test_revoked_then_expired_reports_expired(self, authority, user, clock) -> None:
        token = authority.issue(user, "FUNCIONARIO")
        authority.revoke(token)
        clock.advance(hours=25)
        with pytest.raises(ExpiredToken):
            authority.validate(token)


class TestSweep:
    def test_sweep_removes_only_expired_entries(self, settings, user_store, user, clock) -> None:
        short = TokenAuthority(make_settings(token_expire_hours=1), user_store, clock=clock)
        long = TokenAuthority(settings, user_store, clock=clock)
        stale = short.issue(user, "FUNCIONARIO")
        live = long.issue(user, "FUNCIONARIO")
        short.revoke(stale)
        long.revoke(live)

        clock.advance(hours=2)
        assert long.sweep_expired() == 1

        assert not user_store.is_token_blacklisted(stale)
        assert user_store.is_token_blacklisted(live)
        with pytest.raises(RevokedToken):
            long.validate(live)

    def test_sweep_on_empty_blacklist(self, authority) -> None:
        assert authority.sweep_expired() == 0
