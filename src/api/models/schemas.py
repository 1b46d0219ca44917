"""Pydantic V2 request/response schemas for the billing API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.core.types import (
    AdminRole,
    CancelEffective,
    ChangeMode,
    CheckoutStatus,
    PermissionLevel,
    PricePolicy,
    SubscriptionStatus,
)


class ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Health ────────────────────────────────────────────────────────

class HealthResponse(ApiModel):
    status: str = "ok"
    version: str = "0.1.0"
    environment: str = "dev"
    store_backend: str = "memory"


class ErrorResponse(BaseModel):
    detail: str


# ── End-user & checkout sessions ─────────────────────────────────

class AuthSessionResponse(ApiModel):
    email: str
    expires_at: datetime


class CheckoutCreate(ApiModel):
    plan: str = Field(..., min_length=1)
    token: str | None = None
    tenant_id: str | None = None
    tenant_name: str | None = None
    is_new_tenant: bool | None = None
    mode: str | None = None


class CheckoutUpdate(ApiModel):
    status: CheckoutStatus
    order_id: str | None = None
    tenant_name: str | None = None
    tenant_id: str | None = None


class CheckoutOut(ApiModel):
    email: str
    plan: str
    tenant_id: str | None = None
    tenant_name: str | None = None
    is_new_tenant: bool | None = None
    mode: str | None = None
    status: CheckoutStatus
    order_id: str | None = None
    expires_at: datetime


# ── Admins ────────────────────────────────────────────────────────

class LoginRequest(ApiModel):
    login_id: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class AdminMeResponse(ApiModel):
    admin_id: str
    login_id: str
    name: str
    role: AdminRole
    permissions: list[str]


class AdminOut(ApiModel):
    id: str
    login_id: str
    name: str
    role: AdminRole
    last_login_at: datetime | None = None


class AdminCreate(ApiModel):
    login_id: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=8)
    name: str = Field(..., min_length=1, max_length=100)
    role: AdminRole = AdminRole.VIEWER


class AdminRoleUpdate(ApiModel):
    role: AdminRole


class RolePermissionsBody(ApiModel):
    permissions: dict[str, list[str]]


# ── Managers ──────────────────────────────────────────────────────

class TenantAccessIn(ApiModel):
    tenant_id: str
    permissions: dict[str, PermissionLevel] = Field(default_factory=dict)


class ManagerCreate(ApiModel):
    login_id: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=8)
    name: str = Field(..., min_length=1, max_length=100)
    phone: str | None = None
    tenants: list[TenantAccessIn] = Field(default_factory=list)


class ManagerUpdate(ApiModel):
    name: str | None = None
    phone: str | None = None
    password: str | None = Field(default=None, min_length=8)
    active: bool | None = None
    tenants: list[TenantAccessIn] | None = None


class ManagerOut(ApiModel):
    manager_id: str
    login_id: str
    name: str
    phone: str | None = None
    active: bool
    tenants: list[TenantAccessIn]
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ManagerSessionResponse(ApiModel):
    manager_id: str
    login_id: str
    name: str
    master_email: str
    tenants: list[TenantAccessIn]
    expires_at: datetime


class BillingTokenResponse(ApiModel):
    token: str
    url: str


# ── Subscriptions ────────────────────────────────────────────────

class SubscriptionOut(ApiModel):
    tenant_id: str
    plan: str
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    next_billing_date: datetime | None = None
    amount: int
    price_policy: PricePolicy
    price_protected_until: datetime | None = None
    pending_plan: str | None = None
    pending_amount: int | None = None
    cancel_at: datetime | None = None
    retry_count: int = 0


class StartRequest(ApiModel):
    plan: str
    email: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    reason: str | None = None


class ChangePlanRequest(ApiModel):
    new_plan: str
    mode: ChangeMode = ChangeMode.IMMEDIATE
    reason: str | None = None


class PeriodRequest(ApiModel):
    current_period_end: datetime
    current_period_start: datetime | None = None
    next_billing_date: datetime | None = None
    reason: str | None = None


class CancelRequest(ApiModel):
    effective: CancelEffective = CancelEffective.END_OF_PERIOD
    reason: str | None = None


class PricePolicyRequest(ApiModel):
    price_policy: PricePolicy
    price_protected_until: datetime | None = None
    new_plan_price: int | None = Field(default=None, ge=0)


class BulkPricePolicyRequest(PricePolicyRequest):
    plan: str


class TransitionResponse(ApiModel):
    changed: bool
    change_type: str
    previous_status: SubscriptionStatus | None = None
    subscription: SubscriptionOut
    amount: int | None = None


class BulkPolicyResponse(ApiModel):
    plan: str
    price_policy: PricePolicy
    matched: int
    updated: int


class PolicyBucketOut(ApiModel):
    count: int
    total_amount: int


class PolicyStatsResponse(ApiModel):
    plan: str
    total: int
    stats: dict[PricePolicy, PolicyBucketOut]


class HistoryOut(ApiModel):
    id: str
    change_type: str
    changed_by: str
    plan: str
    status: SubscriptionStatus
    amount: int
    previous_plan: str | None = None
    previous_status: SubscriptionStatus | None = None
    note: str | None = None
    changed_at: datetime


# ── Billing triggers ─────────────────────────────────────────────

class BillingTrigger(ApiModel):
    tenant_id: str


class PaymentResult(BillingTrigger):
    success: bool
    attempt_id: str | None = Field(default=None, min_length=1, max_length=200)
