#!/usr/bin/env python3
"""Create the owner admin account on a fresh deployment.

Usage:
    python scripts/seed_admin.py --login-id owner --name "Service Owner"
    python scripts/seed_admin.py --login-id owner --password-stdin < secret.txt
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import sys
from pathlib import Path

# Ensure project root is on the path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from config.settings import get_settings
from src.core.exceptions import PrincipalConflictError
from src.core.logging import get_logger, setup_logging
from src.core.types import AdminRole
from src.saas.principals import AdminDirectory
from src.store import create_store

log = get_logger(__name__)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed the owner admin account")
    parser.add_argument("--login-id", required=True)
    parser.add_argument("--name", default="Owner")
    parser.add_argument(
        "--password-stdin",
        action="store_true",
        help="Read the password from stdin instead of prompting",
    )
    return parser.parse_args(argv)


async def seed(login_id: str, name: str, password: str) -> int:
    settings = get_settings()
    store = create_store(settings)
    await store.connect()
    try:
        admins = AdminDirectory(store)
        existing = await admins.find_by_login_id(login_id)
        if existing is not None:
            log.info("owner_exists", admin_id=existing.id, role=existing.role.value)
            return 0
        admin = await admins.create_admin(
            login_id, password, name, AdminRole.OWNER, allow_owner=True
        )
        log.info("owner_seeded", admin_id=admin.id, login_id=login_id)
        return 0
    except PrincipalConflictError as exc:
        log.error("owner_seed_failed", error=exc.message)
        return 1
    finally:
        await store.close()


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_json)

    password = sys.stdin.readline().rstrip("\n") if args.password_stdin else getpass.getpass()
    if len(password) < 8:
        log.error("owner_seed_failed", error="password must be at least 8 characters")
        return 1
    return asyncio.run(seed(args.login_id, args.name, password))


if __name__ == "__main__":
    sys.exit(main())
