"""Append-only subscription history."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

from pydantic import ValidationError
from uuid_extensions import uuid7

from src.core.constants import COLLECTION_SUBSCRIPTION_HISTORY
from src.core.exceptions import StoreUnavailableError
from src.core.logging import get_logger
from src.core.types import Actor
from src.saas.models import HistoryEntry, TransitionResult
from src.store.base import CredentialStore

log = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionHistory:
    def __init__(
        self,
        store: CredentialStore,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._clock = clock

    async def record(
        self,
        result: TransitionResult,
        actor: Actor,
        note: str | None = None,
    ) -> HistoryEntry | None:
        """Append an entry for a changed transition. Failures are logged, never raised."""
        if not result.changed:
            return None
        current = result.current
        previous = result.previous
        entry = HistoryEntry(
            id=str(uuid7()),
            tenant_id=current.tenant_id,
            change_type=result.change_type,
            changed_by=actor,
            plan=current.plan,
            status=current.status,
            amount=current.amount,
            period_start=current.current_period_start,
            period_end=current.current_period_end,
            previous_plan=previous.plan if previous else None,
            previous_status=previous.status if previous else None,
            note=note,
            changed_at=self._clock(),
        )
        try:
            await self._store.set(COLLECTION_SUBSCRIPTION_HISTORY, entry.id, entry.to_doc())
        except StoreUnavailableError:
            log.error(
                "subscription_history_write_failed",
                tenant_id=current.tenant_id,
                change_type=result.change_type.value,
            )
            return None
        return entry

    async def for_tenant(self, tenant_id: str) -> list[HistoryEntry]:
        """Entries for a tenant, oldest first (uuid7 ids sort by time)."""
        found = await self._store.query_equals(COLLECTION_SUBSCRIPTION_HISTORY, "tenantId", tenant_id)
        entries: list[HistoryEntry] = []
        for entry_id, doc in sorted(found, key=lambda pair: pair[0]):
            try:
                entries.append(HistoryEntry.from_doc(doc))
            except ValidationError:
                log.error("history_entry_invalid", entry_id=entry_id)
        return entries
