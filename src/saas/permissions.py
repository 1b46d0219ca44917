"""Permission model for admins (role based) and managers (per-tenant sections)."""

from __future__ import annotations

import time
from collections.abc import Callable

from src.core.constants import (
    COLLECTION_SETTINGS,
    ROLE_PERMISSIONS_CACHE_TTL,
    SETTINGS_ROLE_PERMISSIONS_DOC,
)
from src.core.exceptions import StoreUnavailableError, UnauthorizedError
from src.core.logging import get_logger
from src.core.types import AdminRole, PermissionLevel
from src.saas.models import ManagerSession
from src.store.base import CredentialStore

log = get_logger(__name__)

_ALL = (AdminRole.SUPER, AdminRole.ADMIN, AdminRole.VIEWER)
_STAFF = (AdminRole.SUPER, AdminRole.ADMIN)
_SUPER = (AdminRole.SUPER,)

# permission -> non-owner roles granted it. Owner is never listed; it bypasses this table.
PERMISSIONS: dict[str, tuple[AdminRole, ...]] = {
    "dashboard:read": _ALL,
    "members:read": _ALL,
    "members:write": _STAFF,
    "members:delete": _STAFF,
    "admins:read": _SUPER,
    "admins:write": _SUPER,
    "admins:delete": _SUPER,
    "plans:read": _ALL,
    "plans:write": _STAFF,
    "plans:delete": _STAFF,
    "orders:read": _ALL,
    "orders:write": _STAFF,
    "orders:export": _STAFF,
    "subscriptions:read": _ALL,
    "subscriptions:write": _STAFF,
    "stats:read": _ALL,
    "notifications:read": _ALL,
    "notifications:write": _STAFF,
    "notifications:send": _STAFF,
    "settings:read": _STAFF,
    "settings:write": _SUPER,
}


def default_role_permissions() -> dict[str, frozenset[str]]:
    """Invert ``PERMISSIONS`` into role -> granted permissions."""
    table: dict[str, set[str]] = {role.value: set() for role in _ALL}
    for permission, roles in PERMISSIONS.items():
        for role in roles:
            table[role.value].add(permission)
    return {role: frozenset(perms) for role, perms in table.items()}


class RolePermissionLoader:
    """Role table with an optional store overlay, cached for a short TTL."""

    def __init__(
        self,
        store: CredentialStore | None = None,
        *,
        ttl_seconds: float = ROLE_PERMISSIONS_CACHE_TTL,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._ttl = ttl_seconds
        self._monotonic = monotonic
        self._cached: dict[str, frozenset[str]] | None = None
        self._loaded_at = 0.0

    def invalidate(self) -> None:
        self._cached = None
        self._loaded_at = 0.0

    async def load(self) -> dict[str, frozenset[str]]:
        now = self._monotonic()
        if self._cached is not None and now - self._loaded_at < self._ttl:
            return self._cached
        if self._store is None:
            return default_role_permissions()

        try:
            doc = await self._store.get(COLLECTION_SETTINGS, SETTINGS_ROLE_PERMISSIONS_DOC)
        except StoreUnavailableError:
            log.warning("role_permissions_fallback", reason="store_unavailable")
            return default_role_permissions()

        table = default_role_permissions()
        overlay = (doc or {}).get("permissions")
        if isinstance(overlay, dict):
            for role, perms in overlay.items():
                if role == AdminRole.OWNER.value or not isinstance(perms, list):
                    continue
                table[role] = frozenset(p for p in perms if isinstance(p, str))

        self._cached = table
        self._loaded_at = now
        return table

    async def save(self, table: dict[str, list[str]]) -> None:
        if self._store is None:
            msg = "RolePermissionLoader has no store to save to"
            raise RuntimeError(msg)
        cleaned = {role: sorted(set(perms)) for role, perms in table.items() if role != AdminRole.OWNER.value}
        await self._store.set(
            COLLECTION_SETTINGS, SETTINGS_ROLE_PERMISSIONS_DOC, {"permissions": cleaned}
        )
        self.invalidate()
        log.info("role_permissions_saved", roles=sorted(cleaned))


class PermissionModel:
    """Admin authorization. Owner is decided first and never consults the table."""

    def __init__(self, loader: RolePermissionLoader | None = None) -> None:
        self._loader = loader or RolePermissionLoader()

    @property
    def loader(self) -> RolePermissionLoader:
        return self._loader

    async def allows(self, role: AdminRole, permission: str) -> bool:
        if role is AdminRole.OWNER:
            return True
        table = await self._loader.load()
        return permission in table.get(role.value, frozenset())

    async def require(self, role: AdminRole, permission: str) -> None:
        if not await self.allows(role, permission):
            log.info("permission_denied", role=role.value, permission=permission)
            raise UnauthorizedError(
                "Permission denied",
                {"role": role.value, "permission": permission},
            )


# ── Manager sections ─────────────────────────────────────────────

MANAGER_SECTIONS: tuple[str, ...] = (
    "conversations",
    "data",
    "statistics",
    "tasks",
    "mypage",
    "accounts",
)


def default_manager_permissions() -> dict[str, PermissionLevel]:
    return {section: PermissionLevel.HIDDEN for section in MANAGER_SECTIONS}


def manager_level(session: ManagerSession, tenant_id: str, section: str) -> PermissionLevel:
    """Effective level for a section; anything unassigned is hidden."""
    if not session.active:
        return PermissionLevel.HIDDEN
    for access in session.tenants:
        if access.tenant_id == tenant_id:
            return access.permissions.get(section, PermissionLevel.HIDDEN)
    return PermissionLevel.HIDDEN


def require_manager_level(
    session: ManagerSession,
    tenant_id: str,
    section: str,
    required: PermissionLevel,
) -> PermissionLevel:
    level = manager_level(session, tenant_id, section)
    if not level.allows(required):
        log.info(
            "manager_permission_denied",
            manager_id=session.principal_id,
            tenant_id=tenant_id,
            section=section,
            level=level.value,
            required=required.value,
        )
        raise UnauthorizedError(
            "Permission denied",
            {"tenant_id": tenant_id, "section": section, "required": required.value},
        )
    return level
