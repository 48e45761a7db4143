#!/usr/bin/env python3
"""
Gatehouse -- operator CLI for the credential and session lifecycle service.

Usage:
  python main.py cleanup
  python main.py create-user admin@example.com --role admin
  python main.py check-password
  python main.py unlock alice@example.com
  python main.py disable alice@example.com
  python main.py enable alice@example.com
  python main.py set-role alice@example.com agent

Passwords are always read with a hidden prompt, never from argv, so they do
not end up in shell history or the process list.

Environment variables: the same as the API server (SECRET_KEY, DATABASE_URL,
REDIS_URL, ...). See core/config.py.
"""

import argparse
import getpass
import sys
from typing import Optional

from api.main import build_engine
from auth.engine import AuthEngine
from auth.models import Role
from auth.passwords import evaluate_strength, validate_strength
from core.config import get_settings
from core.errors import AuthError, WeakPassword


def _prompt_password(confirm: bool = True) -> Optional[str]:
    password = getpass.getpass("Password: ")
    if confirm and getpass.getpass("Confirm password: ") != password:
        print("  [!] Passwords do not match.")
        return None
    return password


def _cmd_cleanup(engine: AuthEngine, args: argparse.Namespace) -> int:
    removed = engine.cleanup()
    print(f"Removed {removed} expired or revoked refresh token record(s).")
    return 0


def _cmd_create_user(engine: AuthEngine, args: argparse.Namespace) -> int:
    password = _prompt_password()
    if password is None:
        return 1
    user = engine.provision_user(args.email, password, Role(args.role))
    print(f"Created {user.email} (id={user.id}, role={user.role.value}).")
    return 0


def _cmd_check_password(engine: AuthEngine, args: argparse.Namespace) -> int:
    password = _prompt_password(confirm=False) or ""
    report = evaluate_strength(password)
    print(f"Strength: {report.label} ({report.entropy_bits:.1f} bits, score {report.score}/5)")
    try:
        validate_strength(password, engine.denylist)
    except WeakPassword as e:
        print(f"  [!] Rejected by policy: {e.reason}")
        return 1
    print("Accepted by policy.")
    return 0


def _cmd_unlock(engine: AuthEngine, args: argparse.Namespace) -> int:
    user = engine.get_user_by_email(args.email)
    engine.unlock_user(user.id)
    print(f"Unlocked {user.email}.")
    return 0


def _cmd_set_active(engine: AuthEngine, args: argparse.Namespace) -> int:
    user = engine.get_user_by_email(args.email)
    engine.set_active(user.id, args.active)
    print(f"{'Enabled' if args.active else 'Disabled'} {user.email}.")
    return 0


def _cmd_set_role(engine: AuthEngine, args: argparse.Namespace) -> int:
    user = engine.get_user_by_email(args.email)
    engine.set_role(user.id, Role(args.role))
    print(f"{user.email} is now {args.role}.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gatehouse",
        description="Operator commands for the Gatehouse credential service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py cleanup
  python main.py create-user admin@example.com --role admin
  python main.py check-password
  DATABASE_URL=postgresql://... python main.py unlock alice@example.com
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("cleanup", help="Delete expired and revoked refresh token records")
    p.set_defaults(func=_cmd_cleanup)

    p = sub.add_parser("create-user", help="Create an account (password is prompted)")
    p.add_argument("email")
    p.add_argument("--role", choices=[r.value for r in Role], default=Role.user.value)
    p.set_defaults(func=_cmd_create_user)

    p = sub.add_parser("check-password", help="Estimate password strength and check it against the policy")
    p.set_defaults(func=_cmd_check_password)

    p = sub.add_parser("unlock", help="Clear the failed-login counter and lock of an account")
    p.add_argument("email")
    p.set_defaults(func=_cmd_unlock)

    p = sub.add_parser("disable", help="Disable an account and sign it out everywhere")
    p.add_argument("email")
    p.set_defaults(func=_cmd_set_active, active=False)

    p = sub.add_parser("enable", help="Re-enable a disabled account")
    p.add_argument("email")
    p.set_defaults(func=_cmd_set_active, active=True)

    p = sub.add_parser("set-role", help="Change the role of an account")
    p.add_argument("email")
    p.add_argument("role", choices=[r.value for r in Role])
    p.set_defaults(func=_cmd_set_role)

    return parser


def main(argv: Optional[list[str]] = None, engine: Optional[AuthEngine] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 2

    if engine is None:
        engine = build_engine(get_settings())
    try:
        return args.func(engine, args)
    except AuthError as e:
        message = f"{e.message} {e.detail}" if e.detail else e.message
        print(f"  [!] {message}")
        return 1
    finally:
        engine.store.close()
        engine.cache.close()


if __name__ == "__main__":
    sys.exit(main())
