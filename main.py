#!/usr/bin/env python3
"""
OIDC Login -- administration CLI for the login service's auth database.

The web service itself runs under uvicorn (uvicorn asgi:app). This CLI covers
the operator tasks that have no HTTP surface.

Usage:
  python main.py create-user alice
  python main.py create-user alice --password-stdin < secret.txt
  python main.py purge-states
  python main.py stage-match jdoe@example.com alice
  python main.py show-connection alice

Environment variables:
  AUTH_DB_URL   SQLAlchemy URL of the auth database (default: ./oidclogin_auth.db)
  SECRET_KEY    Required unless DEBUG=true (see core/config.py)
"""

import argparse
import getpass
import sys

from sqlalchemy.exc import IntegrityError

from auth.models import LocalAccount
from auth.schema import create_auth_engine
from auth.state_store import StateStore
from auth.store import AccountStore, PendingMatchStore
from auth.token_store import TokenRecordStore
from auth.tokens import hash_password
from core.config import get_settings

_MIN_PASSWORD_LENGTH = 8


def _read_password(from_stdin: bool) -> str:
    if from_stdin:
        return sys.stdin.readline().rstrip("\n")
    first = getpass.getpass("Password: ")
    second = getpass.getpass("Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        return ""
    return first


def cmd_create_user(args, engine) -> int:
    """Create a local password ("manual") account."""
    password = _read_password(args.password_stdin)
    if len(password) < _MIN_PASSWORD_LENGTH:
        print(f"  [!] Password must be at least {_MIN_PASSWORD_LENGTH} characters.")
        return 1
    accounts = AccountStore(engine)
    try:
        uid = accounts.create_user(LocalAccount(username=args.username, hashed_password=hash_password(password)))
    except IntegrityError:
        print(f"  [!] User '{args.username}' already exists.")
        return 1
    print(f"  Created user '{args.username}' (id={uid}).")
    return 0


def cmd_purge_states(args, engine) -> int:
    """Delete auth states whose login round-trip was abandoned."""
    states = StateStore(engine, ttl_seconds=get_settings().state_ttl_seconds)
    removed = states.purge_expired()
    print(f"  Purged {removed} expired auth state(s); {states.count()} remaining.")
    return 0


def cmd_stage_match(args, engine) -> int:
    """Hold back first logins for a candidate username until an admin resolves them."""
    account = AccountStore(engine).get_by_username(args.username)
    if account is None:
        print(f"  [!] No local account named '{args.username}'.")
        return 1
    match_id = PendingMatchStore(engine).stage(args.candidate, account.id)
    print(f"  Staged match {match_id}: '{args.candidate}' -> '{account.username}'.")
    return 0


def cmd_show_connection(args, engine) -> int:
    account = AccountStore(engine).get_by_username(args.username)
    if account is None:
        print(f"  [!] No local account named '{args.username}'.")
        return 1
    record = TokenRecordStore(engine).get_by_username(account.username)
    print(f"  {account.username}: auth_method={account.auth_method}")
    if record is None:
        print("  Not connected to an identity provider account.")
    else:
        print(f"  Connected as {record.oidc_username or record.external_id} (updated {record.updated_at})")
    return 0


_COMMANDS = {
    "create-user": cmd_create_user,
    "purge-states": cmd_purge_states,
    "stage-match": cmd_stage_match,
    "show-connection": cmd_show_connection,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="oidc-login",
        description="Administration commands for the OIDC login service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user alice
  python main.py stage-match jdoe@example.com alice
  AUTH_DB_URL=sqlite:////var/lib/oidclogin/auth.db python main.py purge-states
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = sub.add_parser("create-user", help="Create a local password account")
    create.add_argument("username")
    create.add_argument(
        "--password-stdin",
        action="store_true",
        help="Read the password from the first line of stdin instead of prompting",
    )

    sub.add_parser("purge-states", help="Delete expired auth states")

    stage = sub.add_parser("stage-match", help="Stage a manual identity-to-account match")
    stage.add_argument("candidate", help="Username the identity provider will present (e.g. the upn)")
    stage.add_argument("username", help="Existing local account to match it to")

    show = sub.add_parser("show-connection", help="Show an account's identity provider binding")
    show.add_argument("username")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    engine = create_auth_engine(get_settings().auth_db_url)
    try:
        return _COMMANDS[args.command](args, engine)
    finally:
        engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
