"""
auth/tokens.py -- Session tokens and password hashing.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       user_id, email, role, iat, exp and a random jti. The jti makes every
       issued token unique, so revoking one session never revokes another
       session issued in the same second.

  Validation order: signature and claim shape, then expiry, then the
       blacklist. A forged or expired token is rejected without touching the
       database -- only well-formed, live tokens cost a lookup.

  Expiry is checked against an injectable clock rather than by python-jose,
       so tests can move time without sleeping.

  Passwords: bcrypt used directly. The _DUMMY_HASH constant enables timing
       equalization in authenticate_user() so response time does not reveal
       whether an email is registered.

  SECRET_KEY and the token lifetime come from the Settings object passed to
       TokenAuthority. This module never reads configuration itself.

Layer rule: no imports from api/ or audit/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt
from sqlalchemy.exc import SQLAlchemyError

from auth.models import TokenClaims
from core.errors import ExpiredToken, InvalidToken, RevokedToken, Unavailable

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore
    from core.config import Settings

logger = logging.getLogger("warden.auth")

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are silently truncated by bcrypt (this is
    a known bcrypt limitation). The API layer caps password length at 72
    characters in the request models.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the database -- treat as a mismatch.
        return False


# Timing equalization dummy hash.
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones. Always call verify_password() even when the
# email does not exist -- bcrypt's constant work factor equalizes timing.
_DUMMY_HASH: str = hash_password("warden_timing_dummy")


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Check an email/password pair with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown email: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the User on success, None on any failure.
    """
    user = store.get_by_email(email)
    if user is None or not user.hashed_password:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user


# ---------------------------------------------------------------------------
# Token authority
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenAuthority:
    """Issues, validates and revokes session tokens.

    Token states: issued -> valid -> expired | revoked. Both end states are
    final; nothing turns an expired or revoked token valid again.

    Usage:
        authority = TokenAuthority(settings, user_store)
        token = authority.issue(user, "FUNCIONARIO")
        claims = authority.validate(token)     # raises Unauthenticated subclasses
        authority.revoke(token)
        authority.sweep_expired()
    """

    def __init__(
        self,
        settings: Settings,
        store: UserStore,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._secret = settings.secret_key
        self._lifetime = timedelta(hours=settings.token_expire_hours)
        self._store = store
        self._clock = clock

    def issue(self, user: User, role_name: str) -> str:
        """Encode a signed JWT for user. Expires token_expire_hours after issue."""
        issued = self._clock()
        payload = {
            "sub": user.email,
            "user_id": user.id,
            "email": user.email,
            "role": role_name,
            "iat": int(issued.timestamp()),
            "exp": int((issued + self._lifetime).timestamp()),
            "jti": secrets.token_hex(8),
        }
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)

    def _decode(self, token: str) -> TokenClaims:
        """Verify signature and claim shape. Expiry is not checked here."""
        try:
            payload = jwt.decode(token, self._secret, algorithms=[_ALGORITHM], options={"verify_exp": False})
        except JWTError as exc:
            raise InvalidToken("Invalid token") from exc
        try:
            return TokenClaims(
                user_id=int(payload["user_id"]),
                email=str(payload["email"]),
                role=str(payload["role"]),
                issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
                expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidToken("Token is missing required claims") from exc

    def validate(self, token: str) -> TokenClaims:
        """Return the claims of a live token.

        Raises InvalidToken, ExpiredToken or RevokedToken (all Unauthenticated),
        or Unavailable when the blacklist cannot be read.
        """
        claims = self._decode(token)
        if claims.expires_at <= self._clock():
            raise ExpiredToken("Token has expired")
        try:
            revoked = self._store.is_token_blacklisted(token)
        except SQLAlchemyError as exc:
            logger.error("Blacklist lookup failed: %s", exc)
            raise Unavailable("Session store unavailable") from exc
        if revoked:
            raise RevokedToken("Token has been revoked")
        return claims

    def revoke(self, token: str) -> bool:
        """Blacklist token until its own expiry.

        The signature must verify -- nobody can fill the blacklist with junk.
        Revoking twice is a no-op. Returns True if a row was written.
        """
        claims = self._decode(token)
        if claims.expires_at <= self._clock():
            # Already unusable; the blacklist would only hold it until the next sweep.
            return False
        try:
            return self._store.blacklist_token(token, claims.expires_at)
        except SQLAlchemyError as exc:
            logger.error("Blacklist insert failed: %s", exc)
            raise Unavailable("Session store unavailable") from exc

    def sweep_expired(self) -> int:
        """Delete blacklist rows for tokens that have expired. Returns the count."""
        removed = self._store.purge_expired_tokens(self._clock())
        if removed:
            logger.info("Token sweep removed %d expired blacklist entr%s", removed, "y" if removed == 1 else "ies")
        return removed
