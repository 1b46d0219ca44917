"""Credential store interface: point reads and writes over opaque document ids.

Every public call is bounded by a timeout. Backends raise
``StoreUnavailableError`` for their own connectivity failures; the timeout
wrapper converts ``asyncio.TimeoutError`` the same way, so callers only ever
see one failure type from the store.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable
from typing import Any, TypeVar

from src.core.constants import DEFAULT_STORE_TIMEOUT
from src.core.exceptions import StoreUnavailableError
from src.core.logging import get_logger

log = get_logger(__name__)

Document = dict[str, Any]
QueryValue = str | int | bool
T = TypeVar("T")


class CredentialStore(ABC):
    """Document-level atomic key-value store consumed by the billing core."""

    def __init__(self, timeout: float = DEFAULT_STORE_TIMEOUT) -> None:
        self._timeout = timeout

    # ── Public API (timeout-bounded) ─────────────────────────────

    async def get(self, collection: str, doc_id: str) -> Document | None:
        return await self._bounded("get", collection, self._get(collection, doc_id))

    async def set(
        self,
        collection: str,
        doc_id: str,
        doc: Document,
        ttl_seconds: int | None = None,
    ) -> None:
        await self._bounded("set", collection, self._set(collection, doc_id, doc, ttl_seconds))

    async def create(
        self,
        collection: str,
        doc_id: str,
        doc: Document,
        ttl_seconds: int | None = None,
    ) -> bool:
        """Write ``doc`` only if ``doc_id`` is absent. Returns True if this call created it."""
        return await self._bounded(
            "create", collection, self._create(collection, doc_id, doc, ttl_seconds)
        )

    async def update(self, collection: str, doc_id: str, partial: Document) -> bool:
        """Shallow-merge ``partial`` into an existing document. Returns False if absent."""
        return await self._bounded("update", collection, self._update(collection, doc_id, partial))

    async def delete(self, collection: str, doc_id: str) -> None:
        await self._bounded("delete", collection, self._delete(collection, doc_id))

    async def query_equals(
        self,
        collection: str,
        field: str,
        value: QueryValue,
        limit: int | None = None,
    ) -> list[tuple[str, Document]]:
        return await self._bounded(
            "query_equals",
            collection,
            self._query_equals(collection, field, value, limit),
        )

    # ── Lifecycle ────────────────────────────────────────────────

    async def connect(self) -> None:
        """Open backend connections. No-op by default."""

    async def close(self) -> None:
        """Release backend connections. No-op by default."""

    # ── Backend hooks ────────────────────────────────────────────

    @abstractmethod
    async def _get(self, collection: str, doc_id: str) -> Document | None: ...

    @abstractmethod
    async def _set(
        self, collection: str, doc_id: str, doc: Document, ttl_seconds: int | None
    ) -> None: ...

    @abstractmethod
    async def _create(
        self, collection: str, doc_id: str, doc: Document, ttl_seconds: int | None
    ) -> bool: ...

    @abstractmethod
    async def _update(self, collection: str, doc_id: str, partial: Document) -> bool: ...

    @abstractmethod
    async def _delete(self, collection: str, doc_id: str) -> None: ...

    @abstractmethod
    async def _query_equals(
        self, collection: str, field: str, value: QueryValue, limit: int | None
    ) -> list[tuple[str, Document]]: ...

    # ── Helpers ──────────────────────────────────────────────────

    async def _bounded(self, op: str, collection: str, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            log.warning("store_timeout", op=op, collection=collection, timeout=self._timeout)
            raise StoreUnavailableError(
                f"store {op} timed out",
                {"collection": collection, "timeout": self._timeout},
            ) from exc
