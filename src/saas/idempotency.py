"""Claims on externally supplied event ids, so a redelivered event applies once."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

from src.core.constants import COLLECTION_IDEMPOTENCY_KEYS, IDEMPOTENCY_KEY_TTL
from src.core.logging import get_logger
from src.store.base import CredentialStore

log = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IdempotencyLedger:
    """``claim`` relies on the store's create-if-absent, so concurrent
    deliveries of the same key have exactly one winner."""

    def __init__(
        self,
        store: CredentialStore,
        *,
        ttl_seconds: int = IDEMPOTENCY_KEY_TTL,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._ttl = ttl_seconds
        self._clock = clock

    @staticmethod
    def key(operation: str, tenant_id: str, event_id: str) -> str:
        return f"{operation}_{tenant_id}_{event_id}"

    async def claim(self, key: str) -> bool:
        """True when this call is the first to see ``key``."""
        created = await self._store.create(
            COLLECTION_IDEMPOTENCY_KEYS,
            key,
            {"key": key, "claimedAt": self._clock().isoformat()},
            ttl_seconds=self._ttl,
        )
        if not created:
            log.info("idempotency_key_replayed", key=key)
        return created

    async def release(self, key: str) -> None:
        """Forget ``key`` after the claimed work failed, so a retry can run."""
        await self._store.delete(COLLECTION_IDEMPOTENCY_KEYS, key)
