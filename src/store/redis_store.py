"""Redis-backed document store (JSON strings under ``collection:id`` keys)."""

from __future__ import annotations

import json

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from src.core.constants import DEFAULT_STORE_TIMEOUT
from src.core.exceptions import StoreUnavailableError
from src.core.logging import get_logger
from src.store.base import CredentialStore, Document, QueryValue

log = get_logger(__name__)

_SCAN_BATCH = 200

# Atomic read-merge-write for update(); KEEPTTL preserves hygiene expiry.
_MERGE_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then return 0 end
local doc = cjson.decode(raw)
local patch = cjson.decode(ARGV[1])
for k, v in pairs(patch) do doc[k] = v end
redis.call('SET', KEYS[1], cjson.encode(doc), 'KEEPTTL')
return 1
"""


class RedisDocumentStore(CredentialStore):
    """Async Redis storage. ``create`` relies on SET NX."""

    def __init__(
        self,
        redis_url: str | None = None,
        *,
        client: aioredis.Redis | None = None,
        timeout: float = DEFAULT_STORE_TIMEOUT,
        namespace: str = "billing",
    ) -> None:
        super().__init__(timeout)
        self._url = redis_url
        self._redis = client
        self._namespace = namespace

    async def connect(self) -> None:
        """Initialize the Redis connection."""
        if self._redis is None:
            if self._url is None:
                msg = "RedisDocumentStore needs a redis_url or a client"
                raise ValueError(msg)
            self._redis = aioredis.from_url(self._url, decode_responses=True)
            log.info("redis_connected")

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            log.info("redis_closed")

    async def _get_redis(self) -> aioredis.Redis:
        if self._redis is None and self._url is not None:
            await self.connect()
        if self._redis is None:
            raise StoreUnavailableError("redis client is not connected")
        return self._redis

    def _key(self, collection: str, doc_id: str) -> str:
        return f"{self._namespace}:{collection}:{doc_id}"

    # ── Backend hooks ────────────────────────────────────────────

    async def _get(self, collection: str, doc_id: str) -> Document | None:
        r = await self._get_redis()
        try:
            raw = await r.get(self._key(collection, doc_id))
        except RedisError as exc:
            raise self._unavailable("get", collection, exc) from exc
        if raw is None:
            return None
        return json.loads(raw)  # type: ignore[no-any-return]

    async def _set(
        self, collection: str, doc_id: str, doc: Document, ttl_seconds: int | None
    ) -> None:
        r = await self._get_redis()
        try:
            await r.set(
                self._key(collection, doc_id),
                json.dumps(doc, default=str),
                ex=ttl_seconds,
            )
        except RedisError as exc:
            raise self._unavailable("set", collection, exc) from exc

    async def _create(
        self, collection: str, doc_id: str, doc: Document, ttl_seconds: int | None
    ) -> bool:
        r = await self._get_redis()
        try:
            created = await r.set(
                self._key(collection, doc_id),
                json.dumps(doc, default=str),
                ex=ttl_seconds,
                nx=True,
            )
        except RedisError as exc:
            raise self._unavailable("create", collection, exc) from exc
        return bool(created)

    async def _update(self, collection: str, doc_id: str, partial: Document) -> bool:
        r = await self._get_redis()
        try:
            merged = await r.eval(
                _MERGE_SCRIPT,
                1,
                self._key(collection, doc_id),
                json.dumps(partial, default=str),
            )
        except RedisError as exc:
            raise self._unavailable("update", collection, exc) from exc
        return bool(merged)

    async def _delete(self, collection: str, doc_id: str) -> None:
        r = await self._get_redis()
        try:
            await r.delete(self._key(collection, doc_id))
        except RedisError as exc:
            raise self._unavailable("delete", collection, exc) from exc

    async def _query_equals(
        self, collection: str, field: str, value: QueryValue, limit: int | None
    ) -> list[tuple[str, Document]]:
        # No secondary indexes: scan the collection keyspace.
        r = await self._get_redis()
        prefix = self._key(collection, "")
        matches: list[tuple[str, Document]] = []
        try:
            async for key in r.scan_iter(match=f"{prefix}*", count=_SCAN_BATCH):
                raw = await r.get(key)
                if raw is None:
                    continue
                doc = json.loads(raw)
                if doc.get(field) == value:
                    matches.append((key[len(prefix):], doc))
                    if limit is not None and len(matches) >= limit:
                        break
        except RedisError as exc:
            raise self._unavailable("query_equals", collection, exc) from exc
        return matches

    @staticmethod
    def _unavailable(op: str, collection: str, exc: Exception) -> StoreUnavailableError:
        log.error("store_backend_error", backend="redis", op=op, collection=collection, error=str(exc))
        return StoreUnavailableError(f"redis {op} failed", {"collection": collection})
