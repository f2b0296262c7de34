#!/usr/bin/env python3
"""
AuthGate admin CLI.

Usage:
  python main.py create-user --name "Ana" --email ana@example.com
  python main.py verify-email --email ana@example.com
  python main.py verify-token eyJhbGciOi...
  python main.py purge-state
  python main.py serve --port 8000

Passwords are read with getpass, never from argv (shell history, ps output).
Configuration comes from the same environment / .env as the API server
(SECRET_KEY, DATABASE_URL, STATE_BACKEND, ...).
"""

import argparse
import getpass
import logging
import sys
import time
from datetime import datetime, timezone

from auth.models import RequestContext, TokenFailure
from auth.service import build_auth_service, build_state_store
from auth.store import UserStore
from auth.tokens import TokenService
from core.config import get_settings


def cmd_create_user(args: argparse.Namespace) -> int:
    """Register a user through the same validation and sanitization as POST /register."""
    settings = get_settings()
    password = getpass.getpass("Password: ")
    if password != getpass.getpass("Confirm password: "):
        print("Passwords do not match.", file=sys.stderr)
        return 1

    users = UserStore(settings.database_url, timeout=settings.store_timeout_seconds)
    state = build_state_store(settings)
    try:
        service = build_auth_service(settings, users, state)
        result = service.register(
            {"name": args.name, "email": args.email, "password": password},
            RequestContext(ip="cli", user_agent="authgate-cli"),
        )
    finally:
        state.close()
        users.close()

    if result.status_code != 201:
        print(result.body.get("message", "Registration failed."), file=sys.stderr)
        for field, reasons in (result.body.get("errors") or {}).items():
            for reason in reasons:
                print(f"  {field}: {reason}", file=sys.stderr)
        return 1
    data = result.body["data"]
    print(f"Created user {data['id']} <{data['email']}>")
    return 0


def cmd_verify_email(args: argparse.Namespace) -> int:
    """Stamp email_verified_at for an existing account."""
    settings = get_settings()
    users = UserStore(settings.database_url, timeout=settings.store_timeout_seconds)
    try:
        user = users.get_by_email(args.email.strip().lower())
        if user is None:
            print(f"No user with email {args.email}", file=sys.stderr)
            return 1
        users.update_user(user.id, email_verified_at=datetime.now(timezone.utc).isoformat())
    finally:
        users.close()
    print(f"Verified <{user.email}>")
    return 0


def cmd_verify_token(args: argparse.Namespace) -> int:
    settings = get_settings()
    state = build_state_store(settings)
    try:
        tokens = TokenService(
            settings.secret_key,
            ttl_seconds=settings.token_ttl_seconds,
            revocations=state,
            issuer=settings.token_issuer,
        )
        claims = tokens.verify(args.token)
    finally:
        state.close()

    if isinstance(claims, TokenFailure):
        print(f"Token rejected: {claims.kind.value}", file=sys.stderr)
        return 1
    remaining = claims.expires_at - int(time.time())
    print(f"subject={claims.subject} jti={claims.token_id} expires_in={remaining}s")
    return 0


def cmd_purge_state(args: argparse.Namespace) -> int:
    state = build_state_store(get_settings())
    try:
        removed = state.purge_expired(time.time())
    finally:
        state.close()
    print(f"Removed {removed} expired entries.")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("asgi:app", host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="authgate",
        description="AuthGate administration commands.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-user", help="Register a user (password prompted)")
    create.add_argument("--name", required=True)
    create.add_argument("--email", required=True)
    create.set_defaults(func=cmd_create_user)

    verify_email = sub.add_parser("verify-email", help="Mark a user's email address as verified")
    verify_email.add_argument("--email", required=True)
    verify_email.set_defaults(func=cmd_verify_email)

    verify = sub.add_parser("verify-token", help="Check a bearer token and print its claims")
    verify.add_argument("token")
    verify.set_defaults(func=cmd_verify_token)

    purge = sub.add_parser("purge-state", help="Delete expired rate-limit counters and revocations")
    purge.set_defaults(func=cmd_purge_state)

    serve = sub.add_parser("serve", help="Run the API server")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.set_defaults(func=cmd_serve)
    return parser


def main(argv=None) -> int:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s %(message)s")
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
