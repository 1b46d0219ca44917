"""Tests for the credential store backends."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from config.settings import Settings
from src.core.exceptions import StoreUnavailableError
from src.store import MemoryStore, RedisDocumentStore, SqlDocumentStore, create_store
from src.store.base import Document


class SlowStore(MemoryStore):
    async def _get(self, collection: str, doc_id: str) -> Document | None:
        await asyncio.sleep(1)
        return None


class TestMemoryStore:
    @pytest.mark.asyncio
    async def test_set_and_get(self, store: MemoryStore) -> None:
        await store.set("admins", "a1", {"loginId": "root"})
        assert await store.get("admins", "a1") == {"loginId": "root"}
        assert await store.get("admins", "missing") is None

    @pytest.mark.asyncio
    async def test_documents_are_copied(self, store: MemoryStore) -> None:
        doc = {"tenants": ["t1"]}
        await store.set("users_managers", "m1", doc)
        doc["tenants"].append("t2")

        loaded = await store.get("users_managers", "m1")
        assert loaded == {"tenants": ["t1"]}
        assert loaded is not None
        loaded["tenants"].append("t3")
        assert await store.get("users_managers", "m1") == {"tenants": ["t1"]}

    @pytest.mark.asyncio
    async def test_create_only_once(self, store: MemoryStore) -> None:
        assert await store.create("sso_tokens", "fp", {"email": "a@x.com"}) is True
        assert await store.create("sso_tokens", "fp", {"email": "b@x.com"}) is False
        assert await store.get("sso_tokens", "fp") == {"email": "a@x.com"}

    @pytest.mark.asyncio
    async def test_concurrent_create_has_one_winner(self, store: MemoryStore) -> None:
        outcomes = await asyncio.gather(
            *(store.create("sso_tokens", "fp", {"n": i}) for i in range(10))
        )
        assert outcomes.count(True) == 1

    @pytest.mark.asyncio
    async def test_ttl_expiry(self, store: MemoryStore, clock) -> None:
        await store.set("auth_sessions", "as_1", {"x": 1}, ttl_seconds=60)
        clock.advance(seconds=59)
        assert await store.get("auth_sessions", "as_1") == {"x": 1}
        clock.advance(seconds=1)
        assert await store.get("auth_sessions", "as_1") is None

    @pytest.mark.asyncio
    async def test_create_over_expired_document(self, store: MemoryStore, clock) -> None:
        await store.create("sso_tokens", "fp", {"n": 1}, ttl_seconds=10)
        clock.advance(seconds=11)
        assert await store.create("sso_tokens", "fp", {"n": 2}, ttl_seconds=10) is True

    @pytest.mark.asyncio
    async def test_update_merges_and_reports_missing(self, store: MemoryStore) -> None:
        await store.set("tenants", "t1", {"name": "Acme", "plan": "basic"})
        assert await store.update("tenants", "t1", {"plan": "business"}) is True
        assert await store.get("tenants", "t1") == {"name": "Acme", "plan": "business"}
        assert await store.update("tenants", "nope", {"plan": "basic"}) is False
        assert await store.get("tenants", "nope") is None

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, store: MemoryStore) -> None:
        await store.set("admins", "a1", {})
        await store.delete("admins", "a1")
        await store.delete("admins", "a1")
        assert await store.get("admins", "a1") is None

    @pytest.mark.asyncio
    async def test_query_equals(self, store: MemoryStore) -> None:
        await store.set("subscriptions", "t1", {"plan": "basic", "status": "active"})
        await store.set("subscriptions", "t2", {"plan": "basic", "status": "canceled"})
        await store.set("subscriptions", "t3", {"plan": "business", "status": "active"})

        found = await store.query_equals("subscriptions", "plan", "basic")
        assert sorted(doc_id for doc_id, _ in found) == ["t1", "t2"]
        assert len(await store.query_equals("subscriptions", "status", "active", limit=1)) == 1

    @pytest.mark.asyncio
    async def test_timeout_becomes_unavailable(self) -> None:
        slow = SlowStore(timeout=0.01)
        with pytest.raises(StoreUnavailableError):
            await slow.get("admins", "a1")


class TestRedisDocumentStore:
    def _store(self, client: AsyncMock) -> RedisDocumentStore:
        return RedisDocumentStore(client=client, namespace="test")

    @pytest.mark.asyncio
    async def test_create_uses_set_nx(self) -> None:
        client = AsyncMock()
        client.set.return_value = True
        store = self._store(client)

        assert await store.create("sso_tokens", "fp", {"email": "a@x.com"}, ttl_seconds=600)
        args, kwargs = client.set.call_args
        assert args[0] == "test:sso_tokens:fp"
        assert kwargs["nx"] is True
        assert kwargs["ex"] == 600

    @pytest.mark.asyncio
    async def test_create_loses_when_key_exists(self) -> None:
        client = AsyncMock()
        client.set.return_value = None
        assert await self._store(client).create("sso_tokens", "fp", {}) is False

    @pytest.mark.asyncio
    async def test_get_decodes_json(self) -> None:
        client = AsyncMock()
        client.get.return_value = '{"loginId": "root"}'
        assert await self._store(client).get("admins", "a1") == {"loginId": "root"}

    @pytest.mark.asyncio
    async def test_redis_error_becomes_unavailable(self) -> None:
        client = AsyncMock()
        client.get.side_effect = RedisConnectionError("refused")
        with pytest.raises(StoreUnavailableError):
            await self._store(client).get("admins", "a1")

    @pytest.mark.asyncio
    async def test_closed_client_is_unavailable(self) -> None:
        store = self._store(AsyncMock())
        await store.close()
        with pytest.raises(StoreUnavailableError):
            await store.get("admins", "a1")


class TestSqlDocumentStore:
    @pytest.mark.asyncio
    async def test_closed_engine_is_unavailable(self) -> None:
        store = SqlDocumentStore(engine=AsyncMock())
        await store.close()
        with pytest.raises(StoreUnavailableError):
            await store.get("admins", "a1")


class TestStoreFactory:
    def test_memory_is_default(self) -> None:
        store = create_store(Settings(_env_file=None))
        assert isinstance(store, MemoryStore)

    def test_postgres_backend(self) -> None:
        store = create_store(Settings(_env_file=None, store_backend="postgres"))
        assert isinstance(store, SqlDocumentStore)

    def test_redis_backend(self) -> None:
        store = create_store(Settings(_env_file=None, store_backend="redis"))
        assert isinstance(store, RedisDocumentStore)

    def test_sql_store_needs_url_or_engine(self) -> None:
        with pytest.raises(ValueError):
            SqlDocumentStore()
