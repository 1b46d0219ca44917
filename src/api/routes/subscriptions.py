"""Admin subscription routes: lifecycle actions, history and price policy."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from src.api.deps import Services, get_services, require_permission
from src.api.models.schemas import (
    BulkPolicyResponse,
    BulkPricePolicyRequest,
    CancelRequest,
    ChangePlanRequest,
    HistoryOut,
    PeriodRequest,
    PolicyBucketOut,
    PolicyStatsResponse,
    PricePolicyRequest,
    StartRequest,
    SubscriptionOut,
    TransitionResponse,
)
from src.core.exceptions import PrincipalNotFoundError
from src.saas.models import AdminSession, Subscription, TransitionResult

router = APIRouter(prefix="/admin", tags=["subscriptions"])

_read = require_permission("subscriptions:read")
_write = require_permission("subscriptions:write")


def subscription_out(subscription: Subscription) -> SubscriptionOut:
    return SubscriptionOut.model_validate(subscription.model_dump())


def transition_out(result: TransitionResult, amount: int | None = None) -> TransitionResponse:
    return TransitionResponse(
        changed=result.changed,
        change_type=result.change_type.value,
        previous_status=result.previous.status if result.previous else None,
        subscription=subscription_out(result.current),
        amount=amount,
    )


def _note(admin: AdminSession, reason: str | None) -> str:
    return f"{admin.login_id}: {reason}" if reason else admin.login_id


# ── Reads ─────────────────────────────────────────────────────────


@router.get("/subscriptions/{tenant_id}", response_model=SubscriptionOut)
async def get_subscription(
    tenant_id: str,
    _: AdminSession = Depends(_read),
    services: Services = Depends(get_services),
) -> SubscriptionOut:
    subscription = await services.subscriptions.get(tenant_id)
    if subscription is None:
        raise PrincipalNotFoundError("Subscription not found", {"tenant_id": tenant_id})
    return subscription_out(subscription)


@router.get("/subscriptions/{tenant_id}/history", response_model=list[HistoryOut])
async def get_history(
    tenant_id: str,
    _: AdminSession = Depends(_read),
    services: Services = Depends(get_services),
) -> list[HistoryOut]:
    entries = await services.subscriptions.history.for_tenant(tenant_id)
    return [HistoryOut.model_validate(e.model_dump(mode="json")) for e in entries]


# ── Lifecycle ─────────────────────────────────────────────────────


@router.post("/subscriptions/{tenant_id}/start", response_model=TransitionResponse)
async def start_subscription(
    tenant_id: str,
    body: StartRequest,
    admin: AdminSession = Depends(_write),
    services: Services = Depends(get_services),
) -> TransitionResponse:
    result = await services.subscriptions.start(
        tenant_id,
        body.plan,
        email=body.email,
        period_start=body.current_period_start,
        period_end=body.current_period_end,
        note=_note(admin, body.reason),
    )
    return transition_out(result)


@router.post("/subscriptions/{tenant_id}/change-plan", response_model=TransitionResponse)
async def change_plan(
    tenant_id: str,
    body: ChangePlanRequest,
    admin: AdminSession = Depends(_write),
    services: Services = Depends(get_services),
) -> TransitionResponse:
    outcome = await services.subscriptions.change_plan(
        tenant_id, body.new_plan, body.mode, note=_note(admin, body.reason)
    )
    return transition_out(outcome.result, outcome.amount)


@router.delete("/subscriptions/{tenant_id}/pending", response_model=TransitionResponse)
async def cancel_pending_plan(
    tenant_id: str,
    admin: AdminSession = Depends(_write),
    services: Services = Depends(get_services),
) -> TransitionResponse:
    result = await services.subscriptions.cancel_pending_plan(tenant_id, note=_note(admin, None))
    return transition_out(result)


@router.put("/subscriptions/{tenant_id}/period", response_model=TransitionResponse)
async def adjust_period(
    tenant_id: str,
    body: PeriodRequest,
    admin: AdminSession = Depends(_write),
    services: Services = Depends(get_services),
) -> TransitionResponse:
    result = await services.subscriptions.adjust_period(
        tenant_id,
        body.current_period_end,
        body.next_billing_date,
        period_start=body.current_period_start,
        note=_note(admin, body.reason),
    )
    return transition_out(result)


@router.post("/subscriptions/{tenant_id}/cancel", response_model=TransitionResponse)
async def cancel_subscription(
    tenant_id: str,
    body: CancelRequest,
    admin: AdminSession = Depends(_write),
    services: Services = Depends(get_services),
) -> TransitionResponse:
    outcome = await services.subscriptions.cancel(
        tenant_id, body.effective, note=_note(admin, body.reason)
    )
    return transition_out(outcome.result, outcome.amount)


@router.post("/subscriptions/{tenant_id}/reactivate", response_model=TransitionResponse)
async def reactivate_subscription(
    tenant_id: str,
    admin: AdminSession = Depends(_write),
    services: Services = Depends(get_services),
) -> TransitionResponse:
    result = await services.subscriptions.reactivate(tenant_id, note=_note(admin, None))
    return transition_out(result)


# ── Price policy ──────────────────────────────────────────────────


@router.put("/subscriptions/{tenant_id}/price-policy", response_model=TransitionResponse)
async def set_price_policy(
    tenant_id: str,
    body: PricePolicyRequest,
    admin: AdminSession = Depends(_write),
    services: Services = Depends(get_services),
) -> TransitionResponse:
    result = await services.subscriptions.apply_price_policy(
        tenant_id,
        body.price_policy,
        protected_until=body.price_protected_until,
        new_plan_price=body.new_plan_price,
        note=_note(admin, None),
    )
    return transition_out(result)


@router.post("/price-policy/bulk", response_model=BulkPolicyResponse)
async def bulk_price_policy(
    body: BulkPricePolicyRequest,
    admin: AdminSession = Depends(require_permission("plans:write")),
    services: Services = Depends(get_services),
) -> BulkPolicyResponse:
    outcome = await services.subscriptions.bulk_apply_price_policy(
        body.plan,
        body.price_policy,
        protected_until=body.price_protected_until,
        new_plan_price=body.new_plan_price,
        note=_note(admin, "bulk price policy"),
    )
    return BulkPolicyResponse(
        plan=outcome.plan,
        price_policy=outcome.policy,
        matched=outcome.matched,
        updated=outcome.updated,
    )


@router.get("/price-policy/stats", response_model=PolicyStatsResponse)
async def price_policy_stats(
    plan: str = Query(..., min_length=1),
    _: AdminSession = Depends(require_permission("plans:read")),
    services: Services = Depends(get_services),
) -> PolicyStatsResponse:
    stats = await services.subscriptions.pricing.policy_stats(plan)
    return PolicyStatsResponse(
        plan=stats.plan,
        total=stats.total,
        stats={
            policy: PolicyBucketOut(count=bucket.count, total_amount=bucket.total_amount)
            for policy, bucket in stats.by_policy.items()
        },
    )
