from __future__ import annotations

import argparse
import asyncio
import getpass
import os
import sys

from tenancy.core.errors import TenancyError
from tenancy.core.logging import configure_logging
from tenancy.persistence.db import SessionLocal, engine
from tenancy.services.audit import AuditActor
from tenancy.services.bootstrap import bootstrap


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create the system tenant and its first super-admin")
    parser.add_argument("--name", required=True, help="Display name of the super-admin")
    parser.add_argument("--email", required=True, help="Login email of the super-admin")
    parser.add_argument(
        "--setup-key",
        default=None,
        help="One-time setup key; defaults to the SETUP_KEY environment variable",
    )
    return parser


async def _bootstrap(args: argparse.Namespace, password: str) -> int:
    try:
        async with SessionLocal() as session:
            user = await bootstrap(
                session,
                name=args.name,
                email=args.email,
                password=password,
                setup_key=args.setup_key or os.getenv("SETUP_KEY"),
                actor=AuditActor(actor_type="system", actor_id="bootstrap_super_admin"),
            )
    finally:
        await engine.dispose()
    print("Super-admin created:")
    print(f"  user_id: {user.id}")
    print(f"  tenant_id: {user.tenant_id}")
    print(f"  email: {user.email}")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    # Prompt instead of taking the password as an argument so it stays out of shell history.
    password = os.getenv("SUPER_ADMIN_PASSWORD") or getpass.getpass("Password: ")
    try:
        return asyncio.run(_bootstrap(args, password))
    except TenancyError as exc:
        print(f"bootstrap failed: {exc.code}: {exc.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
