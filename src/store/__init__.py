"""Credential store backends and the settings-driven factory."""

from __future__ import annotations

from config.settings import Settings
from src.store.base import CredentialStore, Document
from src.store.memory import MemoryStore
from src.store.redis_store import RedisDocumentStore
from src.store.sql import SqlDocumentStore


def create_store(settings: Settings) -> CredentialStore:
    """Build the backend selected by ``settings.store_backend`` (not yet connected)."""
    timeout = settings.store_timeout_seconds
    if settings.store_backend == "postgres":
        return SqlDocumentStore(settings.database_url.get_secret_value(), timeout=timeout)
    if settings.store_backend == "redis":
        return RedisDocumentStore(settings.redis_url.get_secret_value(), timeout=timeout)
    return MemoryStore(timeout=timeout)


__all__ = [
    "CredentialStore",
    "Document",
    "MemoryStore",
    "RedisDocumentStore",
    "SqlDocumentStore",
    "create_store",
]
