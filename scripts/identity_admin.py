#!/usr/bin/env python3
"""Administrative actions on identities and tokens.

Usage:
    python scripts/identity_admin.py set-status user@example.com locked
    python scripts/identity_admin.py verify-email user@example.com
    python scripts/identity_admin.py failures user@example.com --minutes 15
    python scripts/identity_admin.py purge-expired

Settings come from the environment and ``.env`` (DATABASE_URL, USE_MEMORY_STORE, JWT_SECRET, ...).
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import timedelta
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from identifier.config import Settings  # noqa: E402
from identifier.logging import configure_logging  # noqa: E402
from identifier.service.errors import NotFoundError, ServiceError  # noqa: E402
from identifier.service.runtime import Runtime  # noqa: E402
from identifier.storage.models import IdentityStatus  # noqa: E402


async def _user_id_for(runtime: Runtime, email: str) -> str:
    identity = await asyncio.to_thread(runtime.store.find_by_email, email.strip().lower())
    if identity is None:
        raise NotFoundError(f"no identity for {email}")
    return identity.user_id


async def run(args: argparse.Namespace, runtime: Runtime) -> dict:
    try:
        if args.command == "set-status":
            user_id = await _user_id_for(runtime, args.email)
            identity = await runtime.identities.set_status(user_id, IdentityStatus(args.status))
            return {"user_id": identity.user_id, "status": identity.status.value}
        if args.command == "verify-email":
            user_id = await _user_id_for(runtime, args.email)
            identity = await runtime.identities.verify_email(user_id)
            return {"user_id": identity.user_id, "status": identity.status.value}
        if args.command == "failures":
            user_id = await _user_id_for(runtime, args.email)
            count = await runtime.identities.recent_failures(
                user_id, timedelta(minutes=args.minutes)
            )
            return {"user_id": user_id, "failures": count, "minutes": args.minutes}
        if args.command == "purge-expired":
            refresh_removed, reset_removed = await runtime.sessions.purge_expired()
            return {"refresh_removed": refresh_removed, "reset_removed": reset_removed}
        raise ServiceError(f"unknown command {args.command}")
    finally:
        await runtime.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Identity administration")
    sub = parser.add_subparsers(dest="command", required=True)

    status = sub.add_parser("set-status", help="Lock, suspend or reactivate an identity")
    status.add_argument("email")
    status.add_argument("status", choices=[s.value for s in IdentityStatus])

    verify = sub.add_parser("verify-email", help="Mark an email as verified")
    verify.add_argument("email")

    failures = sub.add_parser("failures", help="Count recent failed logins")
    failures.add_argument("email")
    failures.add_argument("--minutes", type=int, default=15)

    sub.add_parser("purge-expired", help="Delete expired refresh and reset tokens")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    configure_logging(settings.log_level, json_output=False, development_mode=settings.log_dev_mode)
    try:
        result = asyncio.run(run(args, Runtime(settings)))
    except ServiceError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1
    for key, value in result.items():
        print(f"{key}: {value}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
