#!/usr/bin/env python3
"""
PenTrack auth -- administrative command line.

Usage:
  python main.py create-user alice --role pentester
  python main.py create-user admin --role admin --password-stdin < pw.txt
  python main.py list-users
  python main.py purge-sessions

Runs against the same databases as the API (DATABASE_URL, SESSION_DB_URL).
The first account ever created becomes admin, whatever --role says.
"""

import argparse
import getpass
import sys

from sqlalchemy.exc import IntegrityError

from auth.models import ROLES
from auth.passwords import MAX_PASSWORD_BYTES, password_byte_length
from auth.provisioning import create_local_user
from auth.store import UserStore
from core.config import get_settings
from sessions.store import SessionStore


def _user_store() -> UserStore:
    settings = get_settings()
    return UserStore(settings.database_url) if settings.database_url else UserStore()


def _session_store() -> SessionStore:
    settings = get_settings()
    return SessionStore(settings.session_db_url) if settings.session_db_url else SessionStore()


def _read_password(from_stdin: bool) -> str:
    if from_stdin:
        return sys.stdin.readline().rstrip("\n")
    password = getpass.getpass("Password: ")
    if password != getpass.getpass("Repeat password: "):
        raise SystemExit("  [!] Passwords do not match.")
    return password


def cmd_create_user(args: argparse.Namespace) -> int:
    password = _read_password(args.password_stdin)
    if len(password) < 8:
        print("  [!] Password must be at least 8 characters.")
        return 1
    if password_byte_length(password) > MAX_PASSWORD_BYTES:
        print(f"  [!] Password must be at most {MAX_PASSWORD_BYTES} bytes (UTF-8).")
        return 1
    store = _user_store()
    try:
        user = create_local_user(
            store,
            args.username,
            password,
            args.role,
            email=args.email,
            first_name=args.first_name,
            last_name=args.last_name,
        )
    except IntegrityError:
        print(f"  [!] A user named '{args.username}' already exists.")
        return 1
    finally:
        store.close()
    note = "" if user.role == args.role else " (first account: promoted to admin)"
    print(f"  Created {user.username} [{user.role}] id={user.id}{note}")
    return 0


def cmd_list_users(args: argparse.Namespace) -> int:
    store = _user_store()
    try:
        users = store.list_users()
    finally:
        store.close()
    if not users:
        print("  No users.")
        return 0
    for u in users:
        status = "active" if u.is_active else "disabled"
        name = u.username or u.email or "-"
        print(f"  {u.id:<34} {u.role:<10} {status:<9} {name}")
    return 0


def cmd_purge_sessions(args: argparse.Namespace) -> int:
    store = _session_store()
    try:
        removed = store.purge_expired()
    finally:
        store.close()
    print(f"  Removed {removed} expired session(s).")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="pentrack-auth",
        description="Administer PenTrack accounts and sessions.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-user", help="Create a username/password account")
    create.add_argument("username")
    create.add_argument("--role", choices=ROLES, default="client", help="Role for the new account (default: client)")
    create.add_argument("--email")
    create.add_argument("--first-name")
    create.add_argument("--last-name")
    create.add_argument(
        "--password-stdin",
        action="store_true",
        help="Read the password from the first line of stdin instead of prompting",
    )
    create.set_defaults(func=cmd_create_user)

    list_cmd = sub.add_parser("list-users", help="List all accounts")
    list_cmd.set_defaults(func=cmd_list_users)

    purge = sub.add_parser("purge-sessions", help="Delete expired sessions from the session store")
    purge.set_defaults(func=cmd_purge_sessions)

    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
