"""Typed records for everything the billing core keeps in the credential store.

Documents are stored with camelCase keys. Every read goes through
``from_doc`` so internal code only ever sees a validated model; a document
that fails validation is treated by callers as absent.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from src.core.types import (
    Actor,
    AdminRole,
    ChangeType,
    CheckoutStatus,
    PermissionLevel,
    PricePolicy,
    PrincipalKind,
    SubscriptionStatus,
    TokenPurpose,
)


class StoreModel(BaseModel):
    """Base for store documents: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_doc(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> Self:
        return cls.model_validate(doc)


# ── Tokens ───────────────────────────────────────────────────────

class SSOTokenUsage(StoreModel):
    """First-use record for an SSO token, keyed by the token fingerprint."""

    email: str
    purpose: TokenPurpose
    issued_at: datetime
    used_at: datetime
    grace_expires_at: datetime


# ── Sessions ─────────────────────────────────────────────────────

class SessionRecord(StoreModel):
    id: str
    principal_id: str
    principal_kind: PrincipalKind
    created_at: datetime
    expires_at: datetime


class AuthSession(SessionRecord):
    principal_kind: PrincipalKind = PrincipalKind.USER
    email: str


class AdminSession(SessionRecord):
    """Role is captured at login; a role change takes effect on the next login."""

    principal_kind: PrincipalKind = PrincipalKind.ADMIN
    login_id: str
    name: str
    role: AdminRole


class TenantAccess(StoreModel):
    tenant_id: str
    permissions: dict[str, PermissionLevel] = Field(default_factory=dict)


class ManagerSession(SessionRecord):
    """``tenants`` and ``active`` are refreshed from the manager record on every verify."""

    principal_kind: PrincipalKind = PrincipalKind.MANAGER
    login_id: str
    name: str
    master_email: str
    active: bool = True
    tenants: list[TenantAccess] = Field(default_factory=list)


class CheckoutSession(SessionRecord):
    principal_kind: PrincipalKind = PrincipalKind.USER
    email: str
    plan: str
    tenant_id: str | None = None
    tenant_name: str | None = None
    is_new_tenant: bool | None = None
    mode: str | None = None
    status: CheckoutStatus = CheckoutStatus.PENDING
    order_id: str | None = None
    updated_at: datetime | None = None


# ── Principals ───────────────────────────────────────────────────

class AdminAccount(StoreModel):
    id: str
    login_id: str
    name: str
    role: AdminRole
    password_hash: str
    created_at: datetime | None = None
    last_login_at: datetime | None = None

    @property
    def is_owner(self) -> bool:
        return self.role is AdminRole.OWNER


class Manager(StoreModel):
    manager_id: str
    login_id: str
    name: str
    master_email: str
    password_hash: str
    phone: str | None = None
    active: bool = True
    tenants: list[TenantAccess] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def access_for(self, tenant_id: str) -> TenantAccess | None:
        for access in self.tenants:
            if access.tenant_id == tenant_id:
                return access
        return None


# ── Subscriptions ────────────────────────────────────────────────

class Subscription(StoreModel):
    """Canonical subscription record, one per tenant."""

    tenant_id: str
    plan: str
    status: SubscriptionStatus
    email: str | None = None
    current_period_start: datetime
    current_period_end: datetime
    next_billing_date: datetime | None = None
    amount: int = 0
    price_policy: PricePolicy = PricePolicy.STANDARD
    price_protected_until: datetime | None = None
    grandfathered_amount: int | None = None
    price_override: int | None = None
    pending_plan: str | None = None
    pending_amount: int | None = None
    pending_change_at: datetime | None = None
    cancel_at: datetime | None = None
    previous_status: SubscriptionStatus | None = None
    retry_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("status", "previous_status", mode="before")
    @classmethod
    def _legacy_trial(cls, value: object) -> object:
        # Older records wrote the status as "trial".
        if value == "trial":
            return SubscriptionStatus.TRIALING
        return value

    def view(self) -> "TenantSubscriptionView":
        """Reduced projection mirrored onto the tenant record."""
        return TenantSubscriptionView(
            plan=self.plan,
            status=self.status,
            current_period_end=self.current_period_end,
            next_billing_date=self.next_billing_date,
            amount=self.amount,
            pending_plan=self.pending_plan,
            cancel_at=self.cancel_at,
        )


class TenantSubscriptionView(StoreModel):
    """Partial subscription summary. Only fields explicitly set are merged."""

    plan: str | None = None
    status: SubscriptionStatus | None = None
    current_period_end: datetime | None = None
    next_billing_date: datetime | None = None
    amount: int | None = None
    pending_plan: str | None = None
    cancel_at: datetime | None = None

    def to_partial(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_unset=True)


class HistoryEntry(StoreModel):
    id: str
    tenant_id: str
    change_type: ChangeType
    changed_by: Actor
    plan: str
    status: SubscriptionStatus
    amount: int
    period_start: datetime
    period_end: datetime
    previous_plan: str | None = None
    previous_status: SubscriptionStatus | None = None
    note: str | None = None
    changed_at: datetime


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of a subscription transition. ``changed`` is False for idempotent repeats."""

    previous: Subscription | None
    current: Subscription
    change_type: ChangeType
    changed: bool = True
