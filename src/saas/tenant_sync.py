"""One-way projection of subscription summaries onto tenant records.

The tenant copy is a read optimisation only. A failed sync never reaches
the transition that triggered it: errors are logged and pushed onto a
bounded failure channel that operators (or a retry job) can drain.
"""

from __future__ import annotations

import asyncio
import weakref
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from src.core.constants import COLLECTION_TENANTS, TENANT_SYNC_FAILURE_BUFFER
from src.core.logging import get_logger
from src.saas.models import TenantSubscriptionView
from src.store.base import CredentialStore, Document

log = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SyncFailure:
    tenant_id: str
    error: str
    at: datetime


class TenantSyncPropagator:
    def __init__(
        self,
        store: CredentialStore,
        *,
        on_failure: Callable[[SyncFailure], None] | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._on_failure = on_failure
        self._clock = clock
        self._pending: set[asyncio.Task[bool]] = set()
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self.failures: deque[SyncFailure] = deque(maxlen=TENANT_SYNC_FAILURE_BUFFER)

    async def sync(self, tenant_id: str, view: TenantSubscriptionView) -> bool:
        """Merge the supplied fields into ``tenants/{id}.subscription``.

        Syncs for one tenant run in dispatch order, so a later view is never
        overwritten by an earlier one. Returns True when the tenant was
        updated. Never raises.
        """
        async with self._tenant_lock(tenant_id):
            return await self._merge(tenant_id, view)

    async def _merge(self, tenant_id: str, view: TenantSubscriptionView) -> bool:
        try:
            located = await self._locate(tenant_id)
            if located is None:
                log.info("tenant_sync_skipped", tenant_id=tenant_id, reason="tenant_missing")
                return False
            doc_id, tenant = located

            partial = view.to_partial()
            summary = dict(tenant.get("subscription") or {})
            summary.update(partial)
            patch: dict[str, object] = {"subscription": summary}
            if "plan" in partial:
                patch["plan"] = partial["plan"]

            if not await self._store.update(COLLECTION_TENANTS, doc_id, patch):
                log.info("tenant_sync_skipped", tenant_id=tenant_id, reason="tenant_removed")
                return False
        except Exception as exc:
            self._report(tenant_id, exc)
            return False

        log.debug("tenant_synced", tenant_id=tenant_id, doc_id=doc_id, fields=sorted(partial))
        return True

    async def _locate(self, tenant_id: str) -> tuple[str, Document] | None:
        """Tenant by document id, falling back to its ``tenantId`` field."""
        tenant = await self._store.get(COLLECTION_TENANTS, tenant_id)
        if tenant is not None:
            return tenant_id, tenant
        found = await self._store.query_equals(COLLECTION_TENANTS, "tenantId", tenant_id, limit=1)
        return found[0] if found else None

    def _tenant_lock(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[tenant_id] = lock
        return lock

    def dispatch(self, tenant_id: str, view: TenantSubscriptionView) -> asyncio.Task[bool]:
        """Schedule ``sync`` without awaiting it. ``drain`` waits for outstanding work."""
        task = asyncio.get_running_loop().create_task(self.sync(tenant_id, view))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending))

    @property
    def pending(self) -> int:
        return len(self._pending)

    def _report(self, tenant_id: str, exc: Exception) -> None:
        failure = SyncFailure(tenant_id=tenant_id, error=repr(exc), at=self._clock())
        self.failures.append(failure)
        log.error("tenant_sync_failed", tenant_id=tenant_id, error=str(exc))
        if self._on_failure is not None:
            try:
                self._on_failure(failure)
            except Exception:
                log.exception("tenant_sync_failure_callback_error", tenant_id=tenant_id)
