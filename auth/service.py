"""
auth/service.py -- Login, logout and token-to-principal resolution.

AuthService is the seam the HTTP layer and the CLI talk to. It combines the
TokenAuthority (token lifecycle), UserStore (who the user is) and RBACStore
(what their role is called) into a Principal.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from auth.models import Principal, User
from auth.store import UserStore
from auth.tokens import TokenAuthority, authenticate_user
from core.errors import InvalidCredentials, InvalidToken, Unavailable
from rbac.store import RBACStore

logger = logging.getLogger("warden.auth")


class AuthService:
    def __init__(self, users: UserStore, rbac: RBACStore, authority: TokenAuthority) -> None:
        self.users = users
        self.rbac = rbac
        self.authority = authority

    def _principal_for(self, user: User) -> Principal:
        role = self.rbac.get_role(user.role_id)
        return Principal(
            user_id=user.id,
            email=user.email,
            role_id=user.role_id,
            role_name=role.name if role is not None else "",
        )

    def login(self, email: str, password: str) -> tuple[str, Principal]:
        """Check credentials and issue a session token.

        Unknown email and wrong password raise the same InvalidCredentials
        with the same message, so the response does not reveal which emails
        are registered.
        """
        try:
            user = authenticate_user(self.users, email, password)
            if user is None:
                logger.info("Failed login for %s", email)
                raise InvalidCredentials("Invalid email or password")
            principal = self._principal_for(user)
        except SQLAlchemyError as exc:
            raise Unavailable("User store unavailable") from exc
        token = self.authority.issue(user, principal.role_name)
        logger.info("User %s logged in", principal.email)
        return token, principal

    def logout(self, token: str) -> None:
        """Revoke token. Raises InvalidToken if it was never ours."""
        self.authority.revoke(token)

    def authenticate(self, token: str) -> Principal:
        """Resolve a bearer token to the current Principal.

        The user and role are loaded fresh on every call: a deleted user's
        tokens stop working immediately, and a role change applies to the
        next request.
        """
        claims = self.authority.validate(token)
        try:
            user = self.users.get_by_id(claims.user_id)
            if user is None:
                raise InvalidToken("Token subject no longer exists")
            return self._principal_for(user)
        except SQLAlchemyError as exc:
            raise Unavailable("User store unavailable") from exc
