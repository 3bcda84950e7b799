"""
auth/store.py -- SQLAlchemy Core persistence layer for users and revoked tokens.

Pattern: Repository + Data Mapper (same as rbac/store.py).
UserStore is the repository; _row_to_user is the mapper.
Service and dependency code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Emails are stored lower-cased so the UNIQUE index on users.email is
  effectively case-insensitive on every backend.

  token_blacklist.token is UNIQUE. A second logout with the same token hits
  the constraint and is treated as a no-op, which keeps revocation idempotent
  under concurrent requests without a read-then-write race.

Timestamps: UTC ISO-8601 strings with fixed microsecond precision, so the
expiry sweep can compare them as strings.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import User
from core.config import _DEFAULT_DB_URL
from core.errors import Conflict

logger = logging.getLogger("warden.auth")

# Columns a caller may change through update_user(). Anything else is rejected.
_MUTABLE_USER_FIELDS = frozenset(
    {"email", "first_name", "last_name", "region", "phone", "role_id", "hashed_password"}
)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("region", String(100), nullable=False, server_default=""),
    Column("phone", String(30), nullable=False, server_default=""),
    Column("role_id", Integer, nullable=False, index=True),
    Column("hashed_password", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_token_blacklist = Table(
    "token_blacklist",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", Text, nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False, index=True),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return _iso(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User records and the token blacklist.

    Usage:
        store = UserStore()
        store.create_user(User(email="ana@example.com", role_id=2, hashed_password=hash_password("secret")))
        user = store.get_by_email("ana@example.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises Conflict if the email is already registered.
        """
        now = _now_iso()
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _users.insert().values(
                        email=user.email.strip().lower(),
                        first_name=user.first_name,
                        last_name=user.last_name,
                        region=user.region,
                        phone=user.phone,
                        role_id=user.role_id,
                        hashed_password=user.hashed_password,
                        created_at=now,
                        updated_at=now,
                    )
                )
                conn.commit()
                return result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise Conflict(f"A user with email '{user.email}' already exists") from exc

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users ordered by id."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.id)).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: email, first_name, last_name, region, phone, role_id,
        hashed_password. Unknown keys raise ValueError -- column names must
        never come from raw user input.

        Returns True if a row was updated, False if user_id was not found.
        Raises Conflict if the new email belongs to another user.
        """
        unknown = set(fields) - _MUTABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "email" in fields:
            fields["email"] = fields["email"].strip().lower()
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _users.update().where(_users.c.id == user_id).values(**fields, updated_at=_now_iso())
                )
                conn.commit()
        except IntegrityError as exc:
            raise Conflict(f"A user with email '{fields.get('email')}' already exists") from exc
        return result.rowcount > 0

    def delete_user(self, user_id: int) -> bool:
        """Permanently delete a user record. Returns True if deleted, False if not found."""
        with self.engine.connect() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
            conn.commit()
        return result.rowcount > 0

    def count_by_role(self, role_id: int) -> int:
        """Return the number of users assigned to a role.

        Used by DELETE /roles/{id} -- a role that still has users cannot go.
        """
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users).where(_users.c.role_id == role_id)).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Token blacklist
    # ------------------------------------------------------------------

    def blacklist_token(self, token: str, expires_at: datetime) -> bool:
        """Record a revoked token until its own expiry.

        Returns True if a row was inserted, False if the token was already
        revoked (duplicate insert on the UNIQUE column is a no-op).
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(_token_blacklist.insert().values(token=token, expires_at=_iso(expires_at)))
                conn.commit()
        except IntegrityError:
            logger.debug("Token already blacklisted")
            return False
        return True

    def is_token_blacklisted(self, token: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(select(_token_blacklist.c.id).where(_token_blacklist.c.token == token)).first()
        return row is not None

    def purge_expired_tokens(self, now: datetime | None = None) -> int:
        """Delete blacklist rows whose expiry is in the past. Returns the count.

        An expired token is rejected by its exp claim alone, so its blacklist
        row carries no information any more.
        """
        cutoff = _iso(now) if now is not None else _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_token_blacklist.delete().where(_token_blacklist.c.expires_at < cutoff))
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        first_name=row.first_name,
        last_name=row.last_name,
        region=row.region,
        phone=row.phone,
        role_id=row.role_id,
        hashed_password=row.hashed_password,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
