"""Tests for admin/manager directories and the login flows."""

from __future__ import annotations

import asyncio
import time

import pytest

from src.core.exceptions import PrincipalConflictError, PrincipalNotFoundError, UnauthorizedError
from src.core.types import AdminRole, AuthFailure, PermissionLevel, TokenPurpose
from src.saas import principals
from src.saas.models import AdminSession, AuthSession, ManagerSession
from src.saas.principals import (
    AdminDirectory,
    LoginService,
    ManagerDirectory,
    hash_password,
    verify_password,
)
from src.saas.sessions import SessionManager
from src.saas.tokens import ManagerBillingTokens, TokenVerifier
from src.store.memory import MemoryStore

SECRET = "unit-test-secret"
ROUNDS = 4


@pytest.fixture()
def sessions(store: MemoryStore, clock) -> SessionManager:
    return SessionManager(store, clock=clock)


@pytest.fixture()
def admins(store: MemoryStore, clock) -> AdminDirectory:
    return AdminDirectory(store, bcrypt_rounds=ROUNDS, clock=clock)


@pytest.fixture()
def managers(store: MemoryStore, sessions: SessionManager, clock) -> ManagerDirectory:
    return ManagerDirectory(store, sessions, bcrypt_rounds=ROUNDS, clock=clock)


@pytest.fixture()
def logins(
    store: MemoryStore,
    sessions: SessionManager,
    admins: AdminDirectory,
    managers: ManagerDirectory,
    clock,
) -> LoginService:
    return LoginService(
        TokenVerifier(store, SECRET, clock=clock),
        ManagerBillingTokens(SECRET, clock=clock),
        sessions,
        admins,
        managers,
    )


class TestPasswords:
    def test_hash_and_verify(self) -> None:
        hashed = hash_password("s3cret-pass", ROUNDS)
        assert hashed != "s3cret-pass"
        assert verify_password("s3cret-pass", hashed)
        assert not verify_password("wrong", hashed)

    def test_garbage_hash_does_not_verify(self) -> None:
        assert verify_password("anything", "not-a-bcrypt-hash") is False


class TestAdminDirectory:
    @pytest.mark.asyncio
    async def test_create_and_authenticate(self, admins: AdminDirectory) -> None:
        created = await admins.create_admin("root", "password1", "Root", AdminRole.SUPER)
        assert await admins.authenticate("root", "password1") == created
        assert await admins.authenticate("root", "nope") is None
        assert await admins.authenticate("ghost", "password1") is None

    @pytest.mark.asyncio
    async def test_password_check_runs_off_the_event_loop(
        self, admins: AdminDirectory, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        await admins.create_admin("root", "password1", "Root", AdminRole.SUPER)

        def slow_checkpw(password: bytes, hashed: bytes) -> bool:
            time.sleep(0.2)
            return True

        monkeypatch.setattr(principals.bcrypt, "checkpw", slow_checkpw)
        ticks = 0

        async def ticker() -> None:
            nonlocal ticks
            while True:
                ticks += 1
                await asyncio.sleep(0.005)

        task = asyncio.create_task(ticker())
        try:
            assert await admins.authenticate("root", "password1") is not None
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        assert ticks >= 10

    @pytest.mark.asyncio
    async def test_duplicate_login_id(self, admins: AdminDirectory) -> None:
        await admins.create_admin("root", "password1", "Root", AdminRole.SUPER)
        with pytest.raises(PrincipalConflictError):
            await admins.create_admin("root", "password2", "Other", AdminRole.VIEWER)

    @pytest.mark.asyncio
    async def test_owner_role_only_through_seeding(self, admins: AdminDirectory) -> None:
        with pytest.raises(PrincipalConflictError):
            await admins.create_admin("boss", "password1", "Boss", AdminRole.OWNER)
        owner = await admins.create_admin(
            "boss", "password1", "Boss", AdminRole.OWNER, allow_owner=True
        )
        assert owner.is_owner

    @pytest.mark.asyncio
    async def test_owner_cannot_be_demoted_or_deleted(self, admins: AdminDirectory) -> None:
        owner = await admins.create_admin(
            "boss", "password1", "Boss", AdminRole.OWNER, allow_owner=True
        )
        other = await admins.create_admin("root", "password1", "Root", AdminRole.SUPER)
        with pytest.raises(PrincipalConflictError):
            await admins.change_role(owner.id, AdminRole.VIEWER)
        with pytest.raises(PrincipalConflictError):
            await admins.delete_admin(owner.id, acting_admin_id=other.id)
        with pytest.raises(PrincipalConflictError):
            await admins.change_role(other.id, AdminRole.OWNER)

    @pytest.mark.asyncio
    async def test_change_role(self, admins: AdminDirectory) -> None:
        admin = await admins.create_admin("ops", "password1", "Ops", AdminRole.VIEWER)
        updated = await admins.change_role(admin.id, AdminRole.ADMIN)
        assert updated.role is AdminRole.ADMIN
        reloaded = await admins.get(admin.id)
        assert reloaded is not None
        assert reloaded.role is AdminRole.ADMIN

    @pytest.mark.asyncio
    async def test_no_self_delete(self, admins: AdminDirectory) -> None:
        admin = await admins.create_admin("ops", "password1", "Ops", AdminRole.SUPER)
        with pytest.raises(PrincipalConflictError):
            await admins.delete_admin(admin.id, acting_admin_id=admin.id)

    @pytest.mark.asyncio
    async def test_missing_admin(self, admins: AdminDirectory) -> None:
        with pytest.raises(PrincipalNotFoundError):
            await admins.change_role("nope", AdminRole.ADMIN)

    @pytest.mark.asyncio
    async def test_list_admins(self, admins: AdminDirectory) -> None:
        await admins.create_admin("a", "password1", "A", AdminRole.VIEWER)
        await admins.create_admin("b", "password1", "B", AdminRole.ADMIN)
        assert {a.login_id for a in await admins.list_admins()} == {"a", "b"}


class TestManagerDirectory:
    @pytest.mark.asyncio
    async def test_create_fills_sections(self, managers: ManagerDirectory) -> None:
        manager = await managers.create_manager(
            "owner@example.com", "ops", "password1", "Ops", tenants=["t1"]
        )
        assert manager.manager_id.startswith("mg_")
        access = manager.access_for("t1")
        assert access is not None
        assert set(access.permissions.values()) == {PermissionLevel.HIDDEN}

    @pytest.mark.asyncio
    async def test_login_id_rules(self, managers: ManagerDirectory) -> None:
        with pytest.raises(PrincipalConflictError):
            await managers.create_manager("owner@example.com", "ops@x", "password1", "Ops")
        await managers.create_manager("owner@example.com", "ops", "password1", "Ops")
        with pytest.raises(PrincipalConflictError):
            await managers.create_manager("other@example.com", "ops", "password1", "Ops")

    @pytest.mark.asyncio
    async def test_only_master_may_edit(self, managers: ManagerDirectory) -> None:
        manager = await managers.create_manager("owner@example.com", "ops", "password1", "Ops")
        with pytest.raises(UnauthorizedError):
            await managers.update_manager("intruder@example.com", manager.manager_id, name="X")
        with pytest.raises(PrincipalNotFoundError):
            await managers.update_manager("owner@example.com", "mg_missing", name="X")

    @pytest.mark.asyncio
    async def test_set_permission(self, managers: ManagerDirectory) -> None:
        manager = await managers.create_manager(
            "owner@example.com", "ops", "password1", "Ops", tenants=["t1"]
        )
        updated = await managers.set_permission(
            "owner@example.com", manager.manager_id, "t1", "data", PermissionLevel.WRITE
        )
        access = updated.access_for("t1")
        assert access is not None
        assert access.permissions["data"] is PermissionLevel.WRITE
        assert access.permissions["accounts"] is PermissionLevel.HIDDEN

    @pytest.mark.asyncio
    async def test_inactive_manager_cannot_log_in(self, managers: ManagerDirectory) -> None:
        manager = await managers.create_manager("owner@example.com", "ops", "password1", "Ops")
        assert await managers.authenticate("ops", "password1") is not None
        await managers.update_manager("owner@example.com", manager.manager_id, active=False)
        assert await managers.authenticate("ops", "password1") is None

    @pytest.mark.asyncio
    async def test_delete_revokes_sessions(
        self, managers: ManagerDirectory, sessions: SessionManager
    ) -> None:
        manager = await managers.create_manager("owner@example.com", "ops", "password1", "Ops")
        session = await sessions.create_manager_session(manager)
        await managers.delete_manager("owner@example.com", manager.manager_id)

        assert await managers.get(manager.manager_id) is None
        assert await sessions.verify_manager_session(session.id) is AuthFailure.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_list_by_master(self, managers: ManagerDirectory) -> None:
        await managers.create_manager("owner@example.com", "a", "password1", "A")
        await managers.create_manager("owner@example.com", "b", "password1", "B")
        await managers.create_manager("other@example.com", "c", "password1", "C")
        listed = await managers.list_by_master("owner@example.com")
        assert {m.login_id for m in listed} == {"a", "b"}


class TestLoginService:
    @pytest.mark.asyncio
    async def test_sso_login_opens_auth_session(self, logins: LoginService) -> None:
        from src.saas.tokens import issue_sso_token

        token = issue_sso_token(SECRET, "kim@example.com", TokenPurpose.ACCOUNT)
        session = await logins.sso_login(token)
        assert isinstance(session, AuthSession)
        assert session.email == "kim@example.com"

    @pytest.mark.asyncio
    async def test_sso_login_bad_token(self, logins: LoginService) -> None:
        assert await logins.sso_login("garbage") is AuthFailure.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_admin_login_records_login(
        self, logins: LoginService, admins: AdminDirectory
    ) -> None:
        admin = await admins.create_admin("root", "password1", "Root", AdminRole.SUPER)
        session = await logins.admin_login("root", "password1")
        assert isinstance(session, AdminSession)
        assert session.role is AdminRole.SUPER
        reloaded = await admins.get(admin.id)
        assert reloaded is not None
        assert reloaded.last_login_at is not None

        assert await logins.admin_login("root", "wrong") is AuthFailure.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_manager_billing_hand_off(
        self, logins: LoginService, managers: ManagerDirectory
    ) -> None:
        manager = await managers.create_manager("owner@example.com", "ops", "password1", "Ops")
        portal_session = await logins.manager_login("ops", "password1")
        assert isinstance(portal_session, ManagerSession)

        token = logins.issue_manager_billing_token(portal_session)
        billing_session = await logins.manager_billing_login(token)
        assert isinstance(billing_session, ManagerSession)
        assert billing_session.principal_id == manager.manager_id
        assert billing_session.id != portal_session.id

    @pytest.mark.asyncio
    async def test_billing_hand_off_rejected_after_deactivation(
        self, logins: LoginService, managers: ManagerDirectory
    ) -> None:
        manager = await managers.create_manager("owner@example.com", "ops", "password1", "Ops")
        portal_session = await logins.manager_login("ops", "password1")
        assert isinstance(portal_session, ManagerSession)
        token = logins.issue_manager_billing_token(portal_session)

        await managers.update_manager("owner@example.com", manager.manager_id, active=False)
        assert await logins.manager_billing_login(token) is AuthFailure.UNAUTHENTICATED
