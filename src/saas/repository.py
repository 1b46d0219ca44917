"""Subscription persistence with per-tenant serialization."""

from __future__ import annotations

import asyncio
import weakref

from pydantic import ValidationError

from src.core.constants import COLLECTION_SUBSCRIPTIONS
from src.core.logging import get_logger
from src.core.types import SubscriptionStatus
from src.saas.models import Subscription
from src.store.base import CredentialStore

log = get_logger(__name__)


class SubscriptionRepository:
    """Reads and whole-record writes of ``subscriptions/{tenant_id}``.

    ``lock(tenant_id)`` hands out one ``asyncio.Lock`` per tenant so that
    read-modify-write sequences in this process never interleave. A lock is
    dropped once no transition holds or awaits it.
    """

    def __init__(self, store: CredentialStore) -> None:
        self._store = store
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def lock(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[tenant_id] = lock
        return lock

    async def get(self, tenant_id: str) -> Subscription | None:
        doc = await self._store.get(COLLECTION_SUBSCRIPTIONS, tenant_id)
        if doc is None:
            return None
        try:
            return Subscription.from_doc(doc)
        except ValidationError:
            log.error("subscription_record_invalid", tenant_id=tenant_id)
            raise

    async def save(self, subscription: Subscription) -> None:
        await self._store.set(
            COLLECTION_SUBSCRIPTIONS, subscription.tenant_id, subscription.to_doc()
        )

    async def list_by_plan(self, plan: str) -> list[Subscription]:
        return await self._list("plan", plan)

    async def list_by_status(self, status: SubscriptionStatus) -> list[Subscription]:
        return await self._list("status", status.value)

    async def _list(self, field: str, value: str) -> list[Subscription]:
        found = await self._store.query_equals(COLLECTION_SUBSCRIPTIONS, field, value)
        subscriptions: list[Subscription] = []
        for tenant_id, doc in found:
            try:
                subscriptions.append(Subscription.from_doc(doc))
            except ValidationError:
                log.error("subscription_record_invalid", tenant_id=tenant_id)
        return subscriptions
