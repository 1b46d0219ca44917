#!/usr/bin/env python3
"""Create the documents table and purge expired rows."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

# Ensure project root is on the path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from config.settings import get_settings
from src.core.logging import get_logger, setup_logging
from src.store.sql import SqlDocumentStore

log = get_logger(__name__)


async def main() -> None:
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_json)
    log.info("starting_schema_initialization")

    store = SqlDocumentStore(
        settings.database_url.get_secret_value(),
        timeout=settings.store_timeout_seconds,
    )
    try:
        await store.init_schema()
        purged = await store.purge_expired()
        log.info("schema_initialization_complete", purged=purged)
    except Exception as exc:
        log.error("schema_initialization_failed", error=str(exc))
        raise
    finally:
        await store.close()


if __name__ == "__main__":
    asyncio.run(main())
