"""Tests for admin role permissions and manager section levels."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.core.exceptions import StoreUnavailableError, UnauthorizedError
from src.core.types import AdminRole, PermissionLevel
from src.saas.models import ManagerSession, TenantAccess
from src.saas.permissions import (
    MANAGER_SECTIONS,
    PERMISSIONS,
    PermissionModel,
    RolePermissionLoader,
    default_role_permissions,
    manager_level,
    require_manager_level,
)
from src.store.base import Document
from src.store.memory import MemoryStore


class DownStore(MemoryStore):
    async def _get(self, collection: str, doc_id: str) -> Document | None:
        raise StoreUnavailableError("down")


class Ticker:
    def __init__(self) -> None:
        self.value = 0.0

    def __call__(self) -> float:
        return self.value


def _manager_session(active: bool = True) -> ManagerSession:
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    return ManagerSession(
        id="ms_1",
        principal_id="mg_1",
        login_id="ops",
        name="Ops",
        master_email="owner@example.com",
        active=active,
        tenants=[
            TenantAccess(
                tenant_id="t1",
                permissions={"data": PermissionLevel.WRITE, "statistics": PermissionLevel.READ},
            )
        ],
        created_at=now,
        expires_at=now + timedelta(hours=24),
    )


class TestRoleTable:
    def test_owner_never_listed(self) -> None:
        assert "owner" not in default_role_permissions()
        for roles in PERMISSIONS.values():
            assert AdminRole.OWNER not in roles

    def test_viewer_is_read_only(self) -> None:
        viewer = default_role_permissions()["viewer"]
        assert viewer
        assert all(p.endswith(":read") for p in viewer)


class TestPermissionModel:
    @pytest.mark.asyncio
    async def test_viewer_cannot_write_members(self) -> None:
        model = PermissionModel()
        assert await model.allows(AdminRole.VIEWER, "members:read") is True
        assert await model.allows(AdminRole.VIEWER, "members:write") is False
        with pytest.raises(UnauthorizedError):
            await model.require(AdminRole.VIEWER, "members:write")

    @pytest.mark.asyncio
    async def test_admin_can_write_members_but_not_admins(self) -> None:
        model = PermissionModel()
        assert await model.allows(AdminRole.ADMIN, "members:write") is True
        assert await model.allows(AdminRole.ADMIN, "admins:write") is False

    @pytest.mark.asyncio
    async def test_owner_allowed_everything(self) -> None:
        model = PermissionModel()
        for permission in PERMISSIONS:
            assert await model.allows(AdminRole.OWNER, permission)
        assert await model.allows(AdminRole.OWNER, "anything:else")

    @pytest.mark.asyncio
    async def test_store_overlay_replaces_role(self, store: MemoryStore) -> None:
        loader = RolePermissionLoader(store)
        await loader.save({"viewer": ["members:read", "members:write"]})
        model = PermissionModel(loader)
        assert await model.allows(AdminRole.VIEWER, "members:write") is True
        assert await model.allows(AdminRole.VIEWER, "plans:read") is False

    @pytest.mark.asyncio
    async def test_overlay_cannot_restrict_owner(self, store: MemoryStore) -> None:
        await store.set("settings", "role_permissions", {"permissions": {"owner": []}})
        model = PermissionModel(RolePermissionLoader(store))
        assert await model.allows(AdminRole.OWNER, "admins:delete") is True

    @pytest.mark.asyncio
    async def test_overlay_is_cached_until_ttl(self, store: MemoryStore) -> None:
        ticker = Ticker()
        loader = RolePermissionLoader(store, ttl_seconds=60, monotonic=ticker)
        model = PermissionModel(loader)
        assert await model.allows(AdminRole.VIEWER, "members:write") is False

        await store.set(
            "settings", "role_permissions", {"permissions": {"viewer": ["members:write"]}}
        )
        assert await model.allows(AdminRole.VIEWER, "members:write") is False
        ticker.value = 61
        assert await model.allows(AdminRole.VIEWER, "members:write") is True

    @pytest.mark.asyncio
    async def test_store_outage_falls_back_to_defaults(self, clock) -> None:
        model = PermissionModel(RolePermissionLoader(DownStore(clock=clock)))
        assert await model.allows(AdminRole.ADMIN, "members:write") is True
        assert await model.allows(AdminRole.VIEWER, "members:write") is False


class TestManagerLevels:
    def test_assigned_levels(self) -> None:
        session = _manager_session()
        assert manager_level(session, "t1", "data") is PermissionLevel.WRITE
        assert manager_level(session, "t1", "statistics") is PermissionLevel.READ

    def test_unassigned_is_hidden(self) -> None:
        session = _manager_session()
        assert manager_level(session, "t1", "accounts") is PermissionLevel.HIDDEN
        assert manager_level(session, "t2", "data") is PermissionLevel.HIDDEN

    def test_inactive_manager_sees_nothing(self) -> None:
        session = _manager_session(active=False)
        for section in MANAGER_SECTIONS:
            assert manager_level(session, "t1", section) is PermissionLevel.HIDDEN

    def test_require_level(self) -> None:
        session = _manager_session()
        assert require_manager_level(session, "t1", "data", PermissionLevel.READ) is PermissionLevel.WRITE
        with pytest.raises(UnauthorizedError):
            require_manager_level(session, "t1", "statistics", PermissionLevel.WRITE)

    def test_level_ordering(self) -> None:
        assert PermissionLevel.WRITE.allows(PermissionLevel.READ)
        assert not PermissionLevel.READ.allows(PermissionLevel.WRITE)
        assert PermissionLevel.HIDDEN.allows(PermissionLevel.HIDDEN)
