"""Server-side sessions for the four principal entry points.

Each kind has its own collection, cookie, id prefix and lifetime. The client
only ever holds the opaque id. Expiry is decided on read: ``is_session_live``
is the pure check, ``discard_expired`` is the deletion, and ``verify_*``
composes the two.
"""

from __future__ import annotations

import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TypeVar

from pydantic import ValidationError

from src.core.constants import (
    COLLECTION_ADMIN_SESSIONS,
    COLLECTION_AUTH_SESSIONS,
    COLLECTION_CHECKOUT_SESSIONS,
    COLLECTION_MANAGER_SESSIONS,
    COLLECTION_MANAGERS,
    COLLECTION_USERS,
    COOKIE_ADMIN_SESSION,
    COOKIE_AUTH_SESSION,
    COOKIE_CHECKOUT_SESSION,
    COOKIE_MANAGER_SESSION,
    LOG_ID_PREFIX_LEN,
    PREFIX_ADMIN_SESSION,
    PREFIX_AUTH_SESSION,
    PREFIX_CHECKOUT_SESSION,
    PREFIX_MANAGER_SESSION,
    SESSION_ID_ENTROPY_BYTES,
    SESSION_STORE_TTL_FACTOR,
)
from src.core.exceptions import StoreUnavailableError
from src.core.logging import get_logger
from src.core.types import AuthFailure, CheckoutStatus, SessionType
from src.saas.models import (
    AdminAccount,
    AdminSession,
    AuthSession,
    CheckoutSession,
    Manager,
    ManagerSession,
    SessionRecord,
)
from src.store.base import CredentialStore

log = get_logger(__name__)

R = TypeVar("R", bound=SessionRecord)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SessionKind:
    type: SessionType
    collection: str
    cookie: str
    prefix: str
    ttl: timedelta

    @property
    def max_age_seconds(self) -> int:
        return int(self.ttl.total_seconds())

    def new_id(self) -> str:
        return self.prefix + secrets.token_urlsafe(SESSION_ID_ENTROPY_BYTES)


def is_session_live(record: SessionRecord, now: datetime) -> bool:
    return now < record.expires_at


def _short(session_id: str) -> str:
    return session_id[:LOG_ID_PREFIX_LEN]


class SessionManager:
    """Creates, verifies and revokes auth, checkout, admin and manager sessions."""

    def __init__(
        self,
        store: CredentialStore,
        *,
        auth_ttl: timedelta = timedelta(hours=24),
        admin_ttl: timedelta = timedelta(hours=24),
        manager_ttl: timedelta = timedelta(hours=24),
        checkout_ttl: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._clock = clock
        self._kinds = {
            SessionType.AUTH: SessionKind(
                SessionType.AUTH, COLLECTION_AUTH_SESSIONS, COOKIE_AUTH_SESSION,
                PREFIX_AUTH_SESSION, auth_ttl,
            ),
            SessionType.CHECKOUT: SessionKind(
                SessionType.CHECKOUT, COLLECTION_CHECKOUT_SESSIONS, COOKIE_CHECKOUT_SESSION,
                PREFIX_CHECKOUT_SESSION, min(checkout_ttl, timedelta(minutes=30)),
            ),
            SessionType.ADMIN: SessionKind(
                SessionType.ADMIN, COLLECTION_ADMIN_SESSIONS, COOKIE_ADMIN_SESSION,
                PREFIX_ADMIN_SESSION, admin_ttl,
            ),
            SessionType.MANAGER: SessionKind(
                SessionType.MANAGER, COLLECTION_MANAGER_SESSIONS, COOKIE_MANAGER_SESSION,
                PREFIX_MANAGER_SESSION, manager_ttl,
            ),
        }

    def kind(self, session_type: SessionType) -> SessionKind:
        return self._kinds[session_type]

    # ── Create ───────────────────────────────────────────────────

    async def create_auth_session(self, email: str) -> AuthSession:
        kind = self._kinds[SessionType.AUTH]
        now = self._clock()
        record = AuthSession(
            id=kind.new_id(),
            principal_id=email,
            email=email,
            created_at=now,
            expires_at=now + kind.ttl,
        )
        await self._persist(kind, record)
        await self._stamp_user_login(email, now)
        return record

    async def create_admin_session(self, admin: AdminAccount) -> AdminSession:
        kind = self._kinds[SessionType.ADMIN]
        now = self._clock()
        record = AdminSession(
            id=kind.new_id(),
            principal_id=admin.id,
            login_id=admin.login_id,
            name=admin.name,
            role=admin.role,
            created_at=now,
            expires_at=now + kind.ttl,
        )
        await self._persist(kind, record)
        return record

    async def create_manager_session(self, manager: Manager) -> ManagerSession:
        kind = self._kinds[SessionType.MANAGER]
        now = self._clock()
        record = ManagerSession(
            id=kind.new_id(),
            principal_id=manager.manager_id,
            login_id=manager.login_id,
            name=manager.name,
            master_email=manager.master_email,
            active=manager.active,
            tenants=manager.tenants,
            created_at=now,
            expires_at=now + kind.ttl,
        )
        await self._persist(kind, record)
        return record

    async def create_checkout_session(
        self,
        email: str,
        plan: str,
        *,
        tenant_id: str | None = None,
        tenant_name: str | None = None,
        is_new_tenant: bool | None = None,
        mode: str | None = None,
    ) -> CheckoutSession:
        kind = self._kinds[SessionType.CHECKOUT]
        now = self._clock()
        record = CheckoutSession(
            id=kind.new_id(),
            principal_id=email,
            email=email,
            plan=plan,
            tenant_id=tenant_id,
            tenant_name=tenant_name,
            is_new_tenant=is_new_tenant,
            mode=mode,
            created_at=now,
            expires_at=now + kind.ttl,
        )
        await self._persist(kind, record)
        return record

    # ── Verify ───────────────────────────────────────────────────

    async def verify_auth_session(self, session_id: str | None) -> AuthSession | AuthFailure:
        return await self._load(self._kinds[SessionType.AUTH], session_id, AuthSession)

    async def verify_admin_session(self, session_id: str | None) -> AdminSession | AuthFailure:
        return await self._load(self._kinds[SessionType.ADMIN], session_id, AdminSession)

    async def verify_checkout_session(
        self, session_id: str | None
    ) -> CheckoutSession | AuthFailure:
        return await self._load(self._kinds[SessionType.CHECKOUT], session_id, CheckoutSession)

    async def verify_manager_session(
        self, session_id: str | None
    ) -> ManagerSession | AuthFailure:
        """Load the session, then overlay the manager's current tenants and status."""
        kind = self._kinds[SessionType.MANAGER]
        outcome = await self._load(kind, session_id, ManagerSession)
        if isinstance(outcome, AuthFailure):
            return outcome

        try:
            doc = await self._store.get(COLLECTION_MANAGERS, outcome.principal_id)
        except StoreUnavailableError:
            return AuthFailure.UNAVAILABLE

        manager: Manager | None = None
        if doc is not None:
            try:
                manager = Manager.from_doc(doc)
            except ValidationError:
                log.error("manager_record_invalid", manager_id=outcome.principal_id)

        if manager is None or not manager.active:
            log.info(
                "manager_session_rejected",
                session=_short(outcome.id),
                manager_id=outcome.principal_id,
                reason="missing" if manager is None else "inactive",
            )
            await self._delete_quietly(kind, outcome.id)
            return AuthFailure.UNAUTHENTICATED

        return outcome.model_copy(
            update={
                "name": manager.name,
                "login_id": manager.login_id,
                "master_email": manager.master_email,
                "active": manager.active,
                "tenants": manager.tenants,
            }
        )

    # ── Update / revoke ──────────────────────────────────────────

    async def update_checkout_session(
        self,
        session_id: str | None,
        status: CheckoutStatus,
        *,
        order_id: str | None = None,
        tenant_name: str | None = None,
        tenant_id: str | None = None,
    ) -> CheckoutSession | AuthFailure:
        kind = self._kinds[SessionType.CHECKOUT]
        current = await self._load(kind, session_id, CheckoutSession)
        if isinstance(current, AuthFailure):
            return current

        changes: dict[str, object] = {"status": status, "updated_at": self._clock()}
        if order_id is not None:
            changes["order_id"] = order_id
        if tenant_name is not None:
            changes["tenant_name"] = tenant_name
        if tenant_id is not None:
            changes["tenant_id"] = tenant_id
        updated = current.model_copy(update=changes)

        partial = {
            k: v for k, v in updated.to_doc().items()
            if k in {"status", "updatedAt", "orderId", "tenantName", "tenantId"}
        }
        try:
            found = await self._store.update(kind.collection, current.id, partial)
        except StoreUnavailableError:
            return AuthFailure.UNAVAILABLE
        if not found:
            return AuthFailure.UNAUTHENTICATED
        log.info("checkout_session_updated", session=_short(current.id), status=status.value)
        return updated

    async def revoke(self, session_type: SessionType, session_id: str | None) -> bool:
        """Delete a session. Returns False only when the store could not be reached."""
        if not session_id:
            return True
        kind = self._kinds[session_type]
        try:
            await self._store.delete(kind.collection, session_id)
        except StoreUnavailableError:
            log.error("session_revoke_failed", kind=kind.type.value, session=_short(session_id))
            return False
        log.info("session_revoked", kind=kind.type.value, session=_short(session_id))
        return True

    async def revoke_manager_sessions(self, manager_id: str) -> int:
        kind = self._kinds[SessionType.MANAGER]
        found = await self._store.query_equals(kind.collection, "principalId", manager_id)
        for session_id, _ in found:
            await self._store.delete(kind.collection, session_id)
        log.info("manager_sessions_revoked", manager_id=manager_id, count=len(found))
        return len(found)

    async def discard_expired(self, session_type: SessionType, record: SessionRecord) -> bool:
        """Delete ``record`` if it is past expiry. Returns True when it was expired."""
        if is_session_live(record, self._clock()):
            return False
        await self._delete_quietly(self._kinds[session_type], record.id)
        log.info("session_expired", kind=session_type.value, session=_short(record.id))
        return True

    # ── Internals ────────────────────────────────────────────────

    async def _persist(self, kind: SessionKind, record: SessionRecord) -> None:
        await self._store.set(
            kind.collection,
            record.id,
            record.to_doc(),
            ttl_seconds=kind.max_age_seconds * SESSION_STORE_TTL_FACTOR,
        )
        log.info(
            "session_created",
            kind=kind.type.value,
            session=_short(record.id),
            principal_id=record.principal_id,
        )

    async def _load(
        self, kind: SessionKind, session_id: str | None, model: type[R]
    ) -> R | AuthFailure:
        if not session_id or not session_id.startswith(kind.prefix):
            return AuthFailure.UNAUTHENTICATED
        try:
            doc = await self._store.get(kind.collection, session_id)
        except StoreUnavailableError:
            return AuthFailure.UNAVAILABLE
        if doc is None:
            return AuthFailure.UNAUTHENTICATED

        try:
            record = model.from_doc(doc)
        except ValidationError:
            log.error("session_record_invalid", kind=kind.type.value, session=_short(session_id))
            await self._delete_quietly(kind, session_id)
            return AuthFailure.UNAUTHENTICATED

        if await self.discard_expired(kind.type, record):
            return AuthFailure.UNAUTHENTICATED
        return record

    async def _delete_quietly(self, kind: SessionKind, session_id: str) -> None:
        # Cleanup only; the caller already has its answer.
        try:
            await self._store.delete(kind.collection, session_id)
        except StoreUnavailableError:
            log.warning("session_cleanup_failed", kind=kind.type.value, session=_short(session_id))

    async def _stamp_user_login(self, email: str, now: datetime) -> None:
        try:
            found = await self._store.update(
                COLLECTION_USERS, email, {"lastLoginAt": now.isoformat()}
            )
        except StoreUnavailableError:
            log.warning("last_login_stamp_failed", email=email)
            return
        if not found:
            log.debug("last_login_user_missing", email=email)
