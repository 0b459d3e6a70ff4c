#!/usr/bin/env python3
"""Create the first administrator, or grant admin to an existing account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='correct horse' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password 'correct horse'
    python scripts/bootstrap_admin.py --email admin@example.com --sign-out-everywhere

With --sign-out-everywhere an existing account also has its token version
bumped, so sessions issued before the promotion must sign in again.

Without DATABASE_URL the in-memory store under SHARED_FS_ROOT is used.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


@dataclass
class BootstrapResult:
    email: str
    status: str
    user_id: Optional[str] = None
    token_version: Optional[int] = None


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Bootstrap a SessionVault administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Required only when the account does not exist yet",
    )
    parser.add_argument("--sign-out-everywhere", action="store_true")
    parser.add_argument("--dry-run", action="store_true")
    return parser.parse_args(argv)


def prepare_environment() -> None:
    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/sessionvault-bootstrap")
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
    # No sessions are issued here, so Redis is optional
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")


async def bootstrap_admin(
    email: str,
    password: Optional[str],
    *,
    sign_out_everywhere: bool = False,
    dry_run: bool = False,
) -> BootstrapResult:
    # Deferred so prepare_environment() runs before settings are read
    from sessionvault.service.auth import normalize_email
    from sessionvault.service.runtime import get_runtime
    from sessionvault.storage.models import Role

    runtime = get_runtime()
    email = normalize_email(email)
    user = runtime.store.get_user_by_email(email)

    if user is None:
        if not password:
            raise ValueError("a password is required to create a new administrator")
        if dry_run:
            return BootstrapResult(email=email, status="would_create")
        user = runtime.store.create_user(email, roles=[Role.ADMIN.value])
        runtime.auth.save_password(user.id, password)
        return BootstrapResult(
            email=email, status="created", user_id=user.id, token_version=user.token_version
        )

    if dry_run:
        return BootstrapResult(email=email, status="would_promote", user_id=user.id)
    status = "already_admin" if user.has_role(Role.ADMIN) else "promoted"
    user = await runtime.auth.add_role(user.id, Role.ADMIN.value)
    token_version = user.token_version
    if sign_out_everywhere:
        summary = await runtime.auth.logout_all(user.id)
        token_version = summary.token_version
    return BootstrapResult(
        email=email, status=status, user_id=user.id, token_version=token_version
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    if not args.email:
        print("Error: --email or ADMIN_EMAIL is required")
        return 1
    if args.password and not (
        MIN_PASSWORD_LENGTH <= len(args.password) <= MAX_PASSWORD_LENGTH
    ):
        print(
            f"Error: password must be {MIN_PASSWORD_LENGTH}-{MAX_PASSWORD_LENGTH} characters"
        )
        return 1

    prepare_environment()
    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email,
                args.password,
                sign_out_everywhere=args.sign_out_everywhere,
                dry_run=args.dry_run,
            )
        )
    except Exception as exc:
        print(f"Error: {exc}")
        return 1

    print(f"{result.status}: {result.email}")
    if result.user_id:
        print(f"  user id: {result.user_id}")
    if result.token_version is not None:
        print(f"  token version: {result.token_version}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
