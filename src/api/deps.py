"""FastAPI dependency injection: the service container and auth guards."""

from __future__ import annotations

import hmac
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from fastapi import Depends, HTTPException, Request, status

from config.settings import Settings
from src.api.middleware import failure_to_http, read_session_id
from src.core.types import AuthFailure, SessionType
from src.saas.history import SubscriptionHistory
from src.saas.idempotency import IdempotencyLedger
from src.saas.lifecycle import SubscriptionService
from src.saas.models import AdminSession, AuthSession, ManagerSession
from src.saas.permissions import PermissionModel, RolePermissionLoader
from src.saas.plans import PlanCatalog
from src.saas.pricing import PricePolicyEngine
from src.saas.principals import AdminDirectory, LoginService, ManagerDirectory
from src.saas.repository import SubscriptionRepository
from src.saas.sessions import SessionManager
from src.saas.subscription import SubscriptionStateMachine
from src.saas.tenant_sync import TenantSyncPropagator
from src.saas.tokens import ManagerBillingTokens, TokenVerifier
from src.store.base import CredentialStore

# ── Service container ─────────────────────────────────────────────


@dataclass
class Services:
    """Everything a request handler needs, built once per process."""

    settings: Settings
    store: CredentialStore
    tokens: TokenVerifier
    billing_tokens: ManagerBillingTokens
    sessions: SessionManager
    admins: AdminDirectory
    managers: ManagerDirectory
    logins: LoginService
    permissions: PermissionModel
    catalog: PlanCatalog
    subscriptions: SubscriptionService
    tenant_sync: TenantSyncPropagator


def build_services(
    settings: Settings,
    store: CredentialStore,
    *,
    clock: Callable[[], datetime] | None = None,
    bcrypt_rounds: int | None = None,
) -> Services:
    """Wire every component against one store."""
    timed: dict[str, Callable[[], datetime]] = {"clock": clock} if clock else {}
    hashing: dict[str, int] = {"bcrypt_rounds": bcrypt_rounds} if bcrypt_rounds else {}
    secret = settings.sso_token_secret.get_secret_value()

    tokens = TokenVerifier(
        store,
        secret,
        max_age_seconds=settings.sso_token_max_age_seconds,
        grace_seconds=settings.sso_token_grace_seconds,
        dev_bypass=settings.dev_bypass_enabled,
        dev_email=settings.dev_email,
        **timed,
    )
    billing_tokens = ManagerBillingTokens(
        secret, max_age_seconds=settings.manager_billing_token_max_age_seconds, **timed
    )
    sessions = SessionManager(
        store,
        auth_ttl=timedelta(hours=settings.auth_session_hours),
        admin_ttl=timedelta(hours=settings.admin_session_hours),
        manager_ttl=timedelta(hours=settings.manager_session_hours),
        checkout_ttl=timedelta(minutes=settings.checkout_session_minutes),
        **timed,
    )
    admins = AdminDirectory(store, **hashing, **timed)
    managers = ManagerDirectory(store, sessions, **hashing, **timed)

    catalog = PlanCatalog(store)
    repository = SubscriptionRepository(store)
    pricing = PricePolicyEngine(repository, catalog, **timed)
    machine = SubscriptionStateMachine(repository, catalog, pricing, **timed)
    tenant_sync = TenantSyncPropagator(store, **timed)

    return Services(
        settings=settings,
        store=store,
        tokens=tokens,
        billing_tokens=billing_tokens,
        sessions=sessions,
        admins=admins,
        managers=managers,
        logins=LoginService(tokens, billing_tokens, sessions, admins, managers),
        permissions=PermissionModel(RolePermissionLoader(store)),
        catalog=catalog,
        subscriptions=SubscriptionService(
            machine,
            pricing,
            SubscriptionHistory(store, **timed),
            tenant_sync,
            IdempotencyLedger(store, **timed),
            **timed,
        ),
        tenant_sync=tenant_sync,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services  # type: ignore[no-any-return]


# ── Session guards ────────────────────────────────────────────────


async def require_user(
    request: Request,
    services: Services = Depends(get_services),
) -> AuthSession:
    """Return the end user's auth session, or 401/503."""
    kind = services.sessions.kind(SessionType.AUTH)
    outcome = await services.sessions.verify_auth_session(read_session_id(request, kind))
    if isinstance(outcome, AuthFailure):
        raise failure_to_http(outcome)
    return outcome


async def require_admin(
    request: Request,
    services: Services = Depends(get_services),
) -> AdminSession:
    kind = services.sessions.kind(SessionType.ADMIN)
    outcome = await services.sessions.verify_admin_session(read_session_id(request, kind))
    if isinstance(outcome, AuthFailure):
        raise failure_to_http(outcome)
    return outcome


async def require_manager(
    request: Request,
    services: Services = Depends(get_services),
) -> ManagerSession:
    """Manager session with tenants and status re-read from the manager record."""
    kind = services.sessions.kind(SessionType.MANAGER)
    outcome = await services.sessions.verify_manager_session(read_session_id(request, kind))
    if isinstance(outcome, AuthFailure):
        raise failure_to_http(outcome)
    return outcome


def require_permission(permission: str) -> Callable[..., Awaitable[AdminSession]]:
    """Dependency factory: an admin session whose role grants ``permission``."""

    async def _guard(
        admin: AdminSession = Depends(require_admin),
        services: Services = Depends(get_services),
    ) -> AdminSession:
        await services.permissions.require(admin.role, permission)
        return admin

    return _guard


async def require_cron(
    request: Request,
    services: Services = Depends(get_services),
) -> None:
    """Billing triggers authenticate with ``Authorization: Bearer <cron_secret>``."""
    expected = services.settings.cron_secret.get_secret_value()
    header = request.headers.get("authorization", "")
    supplied = header[7:] if header.startswith("Bearer ") else ""
    if not expected or not hmac.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid scheduler credentials",
        )
