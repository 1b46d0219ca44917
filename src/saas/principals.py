"""Admin and manager directories, plus the login flows that open sessions."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import TypeVar

import bcrypt
from pydantic import ValidationError
from uuid_extensions import uuid7

from src.core.constants import (
    BCRYPT_ROUNDS,
    COLLECTION_ADMINS,
    COLLECTION_MANAGERS,
    PREFIX_MANAGER_ID,
)
from src.core.exceptions import (
    PrincipalConflictError,
    PrincipalNotFoundError,
    StoreUnavailableError,
    UnauthorizedError,
)
from src.core.logging import get_logger
from src.core.types import AdminRole, AuthFailure, PermissionLevel
from src.saas.models import (
    AdminAccount,
    AdminSession,
    AuthSession,
    Manager,
    ManagerSession,
    TenantAccess,
)
from src.saas.permissions import default_manager_permissions
from src.saas.sessions import SessionManager
from src.saas.tokens import ManagerBillingTokens, TokenVerifier
from src.store.base import CredentialStore, Document

log = get_logger(__name__)

P = TypeVar("P", AdminAccount, Manager)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hash_password(password: str, rounds: int = BCRYPT_ROUNDS) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


# ── Admins ───────────────────────────────────────────────────────

class AdminDirectory:
    """Admin console accounts. The owner account can be neither demoted nor deleted."""

    def __init__(
        self,
        store: CredentialStore,
        *,
        bcrypt_rounds: int = BCRYPT_ROUNDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._rounds = bcrypt_rounds
        self._clock = clock

    async def get(self, admin_id: str) -> AdminAccount | None:
        doc = await self._store.get(COLLECTION_ADMINS, admin_id)
        return _parse(AdminAccount, doc, admin_id)

    async def find_by_login_id(self, login_id: str) -> AdminAccount | None:
        found = await self._store.query_equals(COLLECTION_ADMINS, "loginId", login_id, limit=1)
        if not found:
            return None
        admin_id, doc = found[0]
        return _parse(AdminAccount, doc, admin_id)

    async def list_admins(self) -> list[AdminAccount]:
        admins: list[AdminAccount] = []
        for role in AdminRole:
            for admin_id, doc in await self._store.query_equals(COLLECTION_ADMINS, "role", role.value):
                parsed = _parse(AdminAccount, doc, admin_id)
                if parsed is not None:
                    admins.append(parsed)
        return admins

    async def authenticate(self, login_id: str, password: str) -> AdminAccount | None:
        admin = await self.find_by_login_id(login_id)
        if admin is None or not await asyncio.to_thread(
            verify_password, password, admin.password_hash
        ):
            log.info("admin_login_failed", login_id=login_id)
            return None
        return admin

    async def create_admin(
        self,
        login_id: str,
        password: str,
        name: str,
        role: AdminRole,
        *,
        allow_owner: bool = False,
    ) -> AdminAccount:
        """Create an admin. ``allow_owner`` is reserved for bootstrap seeding."""
        if role is AdminRole.OWNER and not allow_owner:
            raise PrincipalConflictError("The owner role cannot be assigned", {"login_id": login_id})
        if await self.find_by_login_id(login_id) is not None:
            raise PrincipalConflictError("Login id already exists", {"login_id": login_id})

        password_hash = await asyncio.to_thread(hash_password, password, self._rounds)
        admin = AdminAccount(
            id=str(uuid7()),
            login_id=login_id,
            name=name,
            role=role,
            password_hash=password_hash,
            created_at=self._clock(),
        )
        await self._store.set(COLLECTION_ADMINS, admin.id, admin.to_doc())
        log.info("admin_created", admin_id=admin.id, login_id=login_id, role=role.value)
        return admin

    async def change_role(self, admin_id: str, role: AdminRole) -> AdminAccount:
        admin = await self._require(admin_id)
        if admin.is_owner:
            raise PrincipalConflictError("The owner cannot be demoted", {"admin_id": admin_id})
        if role is AdminRole.OWNER:
            raise PrincipalConflictError("The owner role cannot be assigned", {"admin_id": admin_id})
        await self._store.update(COLLECTION_ADMINS, admin_id, {"role": role.value})
        log.info("admin_role_changed", admin_id=admin_id, old=admin.role.value, new=role.value)
        return admin.model_copy(update={"role": role})

    async def change_password(self, admin_id: str, password: str) -> None:
        await self._require(admin_id)
        password_hash = await asyncio.to_thread(hash_password, password, self._rounds)
        await self._store.update(COLLECTION_ADMINS, admin_id, {"passwordHash": password_hash})
        log.info("admin_password_changed", admin_id=admin_id)

    async def delete_admin(self, admin_id: str, *, acting_admin_id: str | None = None) -> None:
        admin = await self._require(admin_id)
        if admin.is_owner:
            raise PrincipalConflictError("The owner cannot be deleted", {"admin_id": admin_id})
        if acting_admin_id == admin_id:
            raise PrincipalConflictError("Admins cannot delete themselves", {"admin_id": admin_id})
        await self._store.delete(COLLECTION_ADMINS, admin_id)
        log.info("admin_deleted", admin_id=admin_id, by=acting_admin_id)

    async def record_login(self, admin_id: str) -> None:
        await self._store.update(
            COLLECTION_ADMINS, admin_id, {"lastLoginAt": self._clock().isoformat()}
        )

    async def _require(self, admin_id: str) -> AdminAccount:
        admin = await self.get(admin_id)
        if admin is None:
            raise PrincipalNotFoundError("Admin not found", {"admin_id": admin_id})
        return admin


# ── Managers ─────────────────────────────────────────────────────

def _normalize_access(tenants: Iterable[TenantAccess | str]) -> list[TenantAccess]:
    """Fill every known section; unassigned sections default to hidden."""
    normalized: list[TenantAccess] = []
    for entry in tenants:
        access = TenantAccess(tenant_id=entry) if isinstance(entry, str) else entry
        permissions = default_manager_permissions()
        permissions.update(access.permissions)
        normalized.append(TenantAccess(tenant_id=access.tenant_id, permissions=permissions))
    return normalized


class ManagerDirectory:
    """Delegated operator accounts, each owned by one master email."""

    def __init__(
        self,
        store: CredentialStore,
        sessions: SessionManager | None = None,
        *,
        bcrypt_rounds: int = BCRYPT_ROUNDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._sessions = sessions
        self._rounds = bcrypt_rounds
        self._clock = clock

    async def get(self, manager_id: str) -> Manager | None:
        doc = await self._store.get(COLLECTION_MANAGERS, manager_id)
        return _parse(Manager, doc, manager_id)

    async def find_by_login_id(self, login_id: str) -> Manager | None:
        found = await self._store.query_equals(COLLECTION_MANAGERS, "loginId", login_id, limit=1)
        if not found:
            return None
        manager_id, doc = found[0]
        return _parse(Manager, doc, manager_id)

    async def list_by_master(self, master_email: str) -> list[Manager]:
        found = await self._store.query_equals(COLLECTION_MANAGERS, "masterEmail", master_email)
        managers = [_parse(Manager, doc, manager_id) for manager_id, doc in found]
        return [m for m in managers if m is not None]

    async def create_manager(
        self,
        master_email: str,
        login_id: str,
        password: str,
        name: str,
        *,
        phone: str | None = None,
        tenants: Iterable[TenantAccess | str] = (),
    ) -> Manager:
        if "@" in login_id:
            raise PrincipalConflictError("Login id cannot contain '@'", {"login_id": login_id})
        if await self.find_by_login_id(login_id) is not None:
            raise PrincipalConflictError("Login id already exists", {"login_id": login_id})

        password_hash = await asyncio.to_thread(hash_password, password, self._rounds)
        now = self._clock()
        manager = Manager(
            manager_id=f"{PREFIX_MANAGER_ID}{uuid7().hex}",
            login_id=login_id,
            name=name,
            master_email=master_email,
            password_hash=password_hash,
            phone=phone,
            active=True,
            tenants=_normalize_access(tenants),
            created_at=now,
            updated_at=now,
        )
        await self._store.set(COLLECTION_MANAGERS, manager.manager_id, manager.to_doc())
        log.info("manager_created", manager_id=manager.manager_id, master=master_email)
        return manager

    async def update_manager(
        self,
        master_email: str,
        manager_id: str,
        *,
        name: str | None = None,
        phone: str | None = None,
        password: str | None = None,
        active: bool | None = None,
        tenants: Iterable[TenantAccess | str] | None = None,
    ) -> Manager:
        manager = await self._require_owned(master_email, manager_id)
        changes: dict[str, object] = {"updated_at": self._clock()}
        if name is not None:
            changes["name"] = name
        if phone is not None:
            changes["phone"] = phone
        if active is not None:
            changes["active"] = active
        if tenants is not None:
            changes["tenants"] = _normalize_access(tenants)
        if password is not None:
            changes["password_hash"] = await asyncio.to_thread(
                hash_password, password, self._rounds
            )

        updated = manager.model_copy(update=changes)
        await self._store.set(COLLECTION_MANAGERS, manager_id, updated.to_doc())
        log.info(
            "manager_updated",
            manager_id=manager_id,
            fields=sorted(k for k in changes if k != "updated_at"),
        )
        return updated

    async def set_permission(
        self,
        master_email: str,
        manager_id: str,
        tenant_id: str,
        section: str,
        level: PermissionLevel,
    ) -> Manager:
        manager = await self._require_owned(master_email, manager_id)
        tenants: list[TenantAccess] = []
        matched = False
        for access in manager.tenants:
            if access.tenant_id == tenant_id:
                access = TenantAccess(
                    tenant_id=tenant_id,
                    permissions={**access.permissions, section: level},
                )
                matched = True
            tenants.append(access)
        if not matched:
            tenants.append(TenantAccess(tenant_id=tenant_id, permissions={section: level}))
        return await self.update_manager(master_email, manager_id, tenants=tenants)

    async def delete_manager(self, master_email: str, manager_id: str) -> None:
        await self._require_owned(master_email, manager_id)
        await self._store.delete(COLLECTION_MANAGERS, manager_id)
        log.info("manager_deleted", manager_id=manager_id, master=master_email)
        if self._sessions is not None:
            await self._sessions.revoke_manager_sessions(manager_id)

    async def authenticate(self, login_id: str, password: str) -> Manager | None:
        manager = await self.find_by_login_id(login_id)
        if manager is None or not await asyncio.to_thread(
            verify_password, password, manager.password_hash
        ):
            log.info("manager_login_failed", login_id=login_id)
            return None
        if not manager.active:
            log.info("manager_login_inactive", manager_id=manager.manager_id)
            return None
        return manager

    async def _require_owned(self, master_email: str, manager_id: str) -> Manager:
        manager = await self.get(manager_id)
        if manager is None:
            raise PrincipalNotFoundError("Manager not found", {"manager_id": manager_id})
        if manager.master_email != master_email:
            raise UnauthorizedError(
                "Manager belongs to another account", {"manager_id": manager_id}
            )
        return manager


def _parse(model: type[P], doc: Document | None, doc_id: str) -> P | None:
    if doc is None:
        return None
    try:
        return model.from_doc(doc)
    except ValidationError:
        log.error("principal_record_invalid", model=model.__name__, id=doc_id)
        return None


# ── Login flows ──────────────────────────────────────────────────

class LoginService:
    """Turns verified credentials into sessions."""

    def __init__(
        self,
        tokens: TokenVerifier,
        billing_tokens: ManagerBillingTokens,
        sessions: SessionManager,
        admins: AdminDirectory,
        managers: ManagerDirectory,
    ) -> None:
        self._tokens = tokens
        self._billing_tokens = billing_tokens
        self._sessions = sessions
        self._admins = admins
        self._managers = managers

    async def sso_login(self, token: str | None) -> AuthSession | AuthFailure:
        identity = await self._tokens.verify(token)
        if isinstance(identity, AuthFailure):
            return identity
        try:
            return await self._sessions.create_auth_session(identity.email)
        except StoreUnavailableError:
            return AuthFailure.UNAVAILABLE

    async def admin_login(self, login_id: str, password: str) -> AdminSession | AuthFailure:
        try:
            admin = await self._admins.authenticate(login_id, password)
            if admin is None:
                return AuthFailure.UNAUTHENTICATED
            session = await self._sessions.create_admin_session(admin)
            await self._admins.record_login(admin.id)
        except StoreUnavailableError:
            return AuthFailure.UNAVAILABLE
        log.info("admin_logged_in", admin_id=admin.id, role=admin.role.value)
        return session

    async def manager_login(self, login_id: str, password: str) -> ManagerSession | AuthFailure:
        try:
            manager = await self._managers.authenticate(login_id, password)
            if manager is None:
                return AuthFailure.UNAUTHENTICATED
            session = await self._sessions.create_manager_session(manager)
        except StoreUnavailableError:
            return AuthFailure.UNAVAILABLE
        log.info("manager_logged_in", manager_id=manager.manager_id)
        return session

    def issue_manager_billing_token(self, session: ManagerSession) -> str:
        return self._billing_tokens.issue(session.principal_id, session.login_id)

    async def manager_billing_login(self, token: str | None) -> ManagerSession | AuthFailure:
        claim = self._billing_tokens.verify(token)
        if isinstance(claim, AuthFailure):
            return claim
        try:
            manager = await self._managers.get(claim.manager_id)
            if manager is None or not manager.active or manager.login_id != claim.login_id:
                log.info("manager_billing_login_rejected", manager_id=claim.manager_id)
                return AuthFailure.UNAUTHENTICATED
            return await self._sessions.create_manager_session(manager)
        except StoreUnavailableError:
            return AuthFailure.UNAVAILABLE
