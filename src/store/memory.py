"""In-process document store for development and tests."""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from src.core.constants import DEFAULT_STORE_TIMEOUT
from src.store.base import CredentialStore, Document, QueryValue


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore(CredentialStore):
    """Dict-backed store. Documents are deep-copied on the way in and out."""

    def __init__(
        self,
        timeout: float = DEFAULT_STORE_TIMEOUT,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        super().__init__(timeout)
        self._clock = clock
        self._data: dict[str, dict[str, Document]] = {}
        self._expiry: dict[tuple[str, str], datetime] = {}
        self._lock = asyncio.Lock()

    def _alive(self, collection: str, doc_id: str) -> bool:
        if doc_id not in self._data.get(collection, {}):
            return False
        expires = self._expiry.get((collection, doc_id))
        if expires is not None and self._clock() >= expires:
            del self._data[collection][doc_id]
            del self._expiry[(collection, doc_id)]
            return False
        return True

    def _put(self, collection: str, doc_id: str, doc: Document, ttl_seconds: int | None) -> None:
        self._data.setdefault(collection, {})[doc_id] = copy.deepcopy(doc)
        if ttl_seconds is not None:
            self._expiry[(collection, doc_id)] = self._clock() + timedelta(seconds=ttl_seconds)
        else:
            self._expiry.pop((collection, doc_id), None)

    async def _get(self, collection: str, doc_id: str) -> Document | None:
        async with self._lock:
            if not self._alive(collection, doc_id):
                return None
            return copy.deepcopy(self._data[collection][doc_id])

    async def _set(
        self, collection: str, doc_id: str, doc: Document, ttl_seconds: int | None
    ) -> None:
        async with self._lock:
            self._put(collection, doc_id, doc, ttl_seconds)

    async def _create(
        self, collection: str, doc_id: str, doc: Document, ttl_seconds: int | None
    ) -> bool:
        async with self._lock:
            if self._alive(collection, doc_id):
                return False
            self._put(collection, doc_id, doc, ttl_seconds)
            return True

    async def _update(self, collection: str, doc_id: str, partial: Document) -> bool:
        async with self._lock:
            if not self._alive(collection, doc_id):
                return False
            self._data[collection][doc_id].update(copy.deepcopy(partial))
            return True

    async def _delete(self, collection: str, doc_id: str) -> None:
        async with self._lock:
            self._data.get(collection, {}).pop(doc_id, None)
            self._expiry.pop((collection, doc_id), None)

    async def _query_equals(
        self, collection: str, field: str, value: QueryValue, limit: int | None
    ) -> list[tuple[str, Document]]:
        async with self._lock:
            matches: list[tuple[str, Document]] = []
            for doc_id in list(self._data.get(collection, {})):
                if not self._alive(collection, doc_id):
                    continue
                doc = self._data[collection][doc_id]
                if doc.get(field) == value:
                    matches.append((doc_id, copy.deepcopy(doc)))
                    if limit is not None and len(matches) >= limit:
                        break
            return matches
