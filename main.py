#!/usr/bin/env python3
"""
Warden -- administrative CLI.

The HTTP API (uvicorn asgi:app) is how Warden is normally used. This CLI
covers the tasks that have to happen outside it: creating the first
superuser, and running a token blacklist sweep on demand (e.g. from cron
when the API runs with several workers).

Usage:
  python main.py create-superuser --email admin@example.com
  python main.py create-superuser --email admin@example.com --password 's3cret!'
  python main.py sweep-tokens

Environment variables:
  SECRET_KEY     Signing key (required unless DEBUG=true)
  DATABASE_URL   SQLAlchemy URL (default: sqlite file next to the project)
"""

import argparse
import getpass
import logging
from typing import Optional

from auth.models import User
from auth.store import UserStore
from auth.tokens import TokenAuthority, hash_password
from core.config import get_settings
from core.errors import Conflict
from rbac.models import ROLES_MODULE, USERS_MODULE
from rbac.store import RBACStore

logger = logging.getLogger("warden.cli")

# Modules the HTTP gate checks. They must exist before anyone but the
# superuser can be granted access to user or role management.
_GATE_MODULES = (
    (USERS_MODULE, "User management"),
    (ROLES_MODULE, "Roles, modules and permissions"),
)


def create_superuser(email: str, password: str, first_name: str = "Super", last_name: str = "Admin") -> int:
    """Ensure the superuser role and the gate modules exist, then create the user.

    Returns the new user's id. Raises Conflict if the email is taken.
    """
    settings = get_settings()
    rbac = RBACStore(settings.database_url, settings.superuser_role_name)
    users = UserStore(settings.database_url)
    try:
        role_id = rbac.ensure_role(settings.superuser_role_name, "Unrestricted access")
        existing = {m.name.lower() for m in rbac.list_modules()}
        missing = [(name, desc) for name, desc in _GATE_MODULES if name not in existing]
        if missing:
            rbac.create_modules(missing)
        return users.create_user(
            User(
                email=email,
                first_name=first_name,
                last_name=last_name,
                role_id=role_id,
                hashed_password=hash_password(password),
            )
        )
    finally:
        rbac.close()
        users.close()


def sweep_tokens() -> int:
    """Run one blacklist sweep. Returns the number of rows removed."""
    settings = get_settings()
    users = UserStore(settings.database_url)
    try:
        return TokenAuthority(settings, users).sweep_expired()
    finally:
        users.close()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="warden",
        description="Warden administrative commands.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-superuser --email admin@example.com
  python main.py sweep-tokens
        """,
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    su = subparsers.add_parser("create-superuser", help="Create a user holding the superuser role")
    su.add_argument("--email", required=True, help="Login email of the new superuser")
    su.add_argument(
        "--password",
        default=None,
        help="Password (prompted for when omitted; avoid passing it on shared machines)",
    )
    su.add_argument("--first-name", default="Super", help="First name (default: Super)")
    su.add_argument("--last-name", default="Admin", help="Last name (default: Admin)")

    subparsers.add_parser("sweep-tokens", help="Delete expired entries from the token blacklist")

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)-5s %(name)s %(message)s")

    if args.command == "create-superuser":
        password = args.password or getpass.getpass("Password: ")
        if len(password) < 6:
            print("  [!] Password must be at least 6 characters.")
            return 1
        try:
            user_id = create_superuser(args.email, password, args.first_name, args.last_name)
        except Conflict as exc:
            print(f"  [!] {exc.message}")
            return 1
        print(f"  Superuser {args.email} created (id {user_id}).")
        return 0

    if args.command == "sweep-tokens":
        removed = sweep_tokens()
        print(f"  Removed {removed} expired blacklist entr{'y' if removed == 1 else 'ies'}.")
        return 0

    parser.print_help()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
