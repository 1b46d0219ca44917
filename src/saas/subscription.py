"""Subscription state machine.

Transitions and the states they leave from::

    start            none | canceled | expired | deleted -> trialing | active
    change_plan      active | trialing | pending_cancel
    cancel           live -> canceled, or active | trialing -> pending_cancel
    reactivate       pending_cancel -> status held before the cancel
    renew            active | trialing (with a reserved plan) -> active,
                     pending_cancel past cancel_at -> canceled
    mark_past_due    active -> past_due
    suspend          past_due -> suspended
    mark_active      past_due | suspended -> active
    expire_trial     trialing -> expired

Every transition runs under the tenant's lock, reads the current record,
and either raises ``IllegalTransitionError`` or writes the whole updated
record once. Repeating a transition whose outcome already holds is a no-op
reported with ``changed=False``. The tenant mirror is the caller's concern.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

from src.core.exceptions import AlreadySubscribedError, IllegalTransitionError
from src.core.logging import get_logger
from src.core.types import (
    CancelEffective,
    ChangeMode,
    ChangeType,
    PricePolicy,
    SubscriptionStatus,
)
from src.saas.models import Subscription, TransitionResult
from src.saas.plans import PlanCatalog
from src.saas.pricing import PricePolicyEngine
from src.saas.repository import SubscriptionRepository

log = get_logger(__name__)

S = SubscriptionStatus

# (updated record, change type); updated=None means the outcome already holds.
Mutation = tuple[Subscription | None, ChangeType]

_PLAN_CHANGEABLE = frozenset({S.ACTIVE, S.TRIALING, S.PENDING_CANCEL})
_CANCELABLE = frozenset({S.TRIALING, S.ACTIVE, S.PAST_DUE, S.PENDING_CANCEL, S.SUSPENDED})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionStateMachine:
    """Owns the canonical ``subscriptions/{tenant_id}`` record."""

    def __init__(
        self,
        repository: SubscriptionRepository,
        catalog: PlanCatalog,
        pricing: PricePolicyEngine,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repo = repository
        self._catalog = catalog
        self._pricing = pricing
        self._clock = clock

    async def get(self, tenant_id: str) -> Subscription | None:
        return await self._repo.get(tenant_id)

    # ── Transitions ──────────────────────────────────────────────

    async def start(
        self,
        tenant_id: str,
        plan: str,
        *,
        email: str | None = None,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
    ) -> TransitionResult:
        async def mutate(current: Subscription | None, now: datetime) -> Mutation:
            if current is not None and current.status.is_live:
                raise AlreadySubscribedError(
                    "Tenant already has a live subscription",
                    tenant_id=tenant_id,
                    current_status=current.status.value,
                    transition="start",
                )
            self._require_plan(plan, tenant_id, current, "start")
            start = period_start or now
            end = period_end or self._catalog.period_end(plan, start)
            if end < start:
                raise self._illegal("Period end cannot precede period start", tenant_id, current, "start")

            trial = self._catalog.is_trial(plan)
            created = Subscription(
                tenant_id=tenant_id,
                plan=plan,
                status=S.TRIALING if trial else S.ACTIVE,
                email=email or (current.email if current else None),
                current_period_start=start,
                current_period_end=end,
                next_billing_date=None if trial else end,
                amount=await self._catalog.list_price(plan),
                created_at=now,
                updated_at=now,
            )
            return created, ChangeType.TRIAL_START if trial else ChangeType.NEW

        return await self._run(tenant_id, "start", mutate)

    async def change_plan(
        self, tenant_id: str, new_plan: str, mode: ChangeMode
    ) -> TransitionResult:
        async def mutate(current: Subscription | None, now: datetime) -> Mutation:
            sub = self._require_status(current, tenant_id, "change_plan", _PLAN_CHANGEABLE)
            self._require_plan(new_plan, tenant_id, sub, "change_plan")
            if self._catalog.is_trial(new_plan):
                raise self._illegal("Cannot change to the trial plan", tenant_id, sub, "change_plan")
            if new_plan == sub.plan:
                raise self._illegal("Already on this plan", tenant_id, sub, "change_plan")

            new_amount = await self._pricing.price_for_plan(sub, new_plan)

            if mode is ChangeMode.RESERVE:
                if sub.pending_plan == new_plan and sub.pending_amount == new_amount:
                    return None, ChangeType.RESERVE
                return sub.model_copy(
                    update={
                        "pending_plan": new_plan,
                        "pending_amount": new_amount,
                        "pending_change_at": sub.next_billing_date or sub.current_period_end,
                    }
                ), ChangeType.RESERVE

            changes: dict[str, object] = {
                "plan": new_plan,
                "amount": new_amount,
                "price_policy": PricePolicy.STANDARD,
                "price_protected_until": None,
                "grandfathered_amount": None,
                "price_override": None,
                "pending_plan": None,
                "pending_amount": None,
                "pending_change_at": None,
            }
            if sub.status is S.TRIALING:
                end = self._catalog.period_end(new_plan, now)
                changes.update(
                    status=S.ACTIVE,
                    current_period_start=now,
                    current_period_end=end,
                    next_billing_date=end,
                )
            change = ChangeType.UPGRADE if new_amount > sub.amount else ChangeType.DOWNGRADE
            return sub.model_copy(update=changes), change

        return await self._run(tenant_id, "change_plan", mutate)

    async def cancel_pending_plan(self, tenant_id: str) -> TransitionResult:
        async def mutate(current: Subscription | None, now: datetime) -> Mutation:
            sub = self._require_status(current, tenant_id, "cancel_pending_plan", _PLAN_CHANGEABLE)
            if sub.pending_plan is None:
                return None, ChangeType.RESERVE_CANCELED
            return sub.model_copy(
                update={"pending_plan": None, "pending_amount": None, "pending_change_at": None}
            ), ChangeType.RESERVE_CANCELED

        return await self._run(tenant_id, "cancel_pending_plan", mutate)

    async def adjust_period(
        self,
        tenant_id: str,
        period_end: datetime,
        next_billing_date: datetime | None = None,
        *,
        period_start: datetime | None = None,
    ) -> TransitionResult:
        """Support override of the current period. The end may not precede the start."""

        async def mutate(current: Subscription | None, now: datetime) -> Mutation:
            sub = self._require_record(current, tenant_id, "adjust_period")
            start = period_start or sub.current_period_start
            if period_end < start:
                raise self._illegal(
                    "Period end cannot precede period start", tenant_id, sub, "adjust_period"
                )
            changes: dict[str, object] = {
                "current_period_start": start,
                "current_period_end": period_end,
            }
            if next_billing_date is not None:
                changes["next_billing_date"] = next_billing_date
            if sub.status is S.PENDING_CANCEL:
                changes["cancel_at"] = period_end
            return sub.model_copy(update=changes), ChangeType.ADMIN_EDIT

        return await self._run(tenant_id, "adjust_period", mutate)

    async def cancel(self, tenant_id: str, effective: CancelEffective) -> TransitionResult:
        async def mutate(current: Subscription | None, now: datetime) -> Mutation:
            sub = self._require_record(current, tenant_id, "cancel")

            if effective is CancelEffective.IMMEDIATE:
                if sub.status is S.CANCELED:
                    return None, ChangeType.CANCEL
                if sub.status not in _CANCELABLE:
                    raise self._illegal(
                        f"Cannot cancel a {sub.status.value} subscription", tenant_id, sub, "cancel"
                    )
                return sub.model_copy(
                    update={
                        "status": S.CANCELED,
                        "cancel_at": now,
                        "next_billing_date": None,
                        "pending_plan": None,
                        "pending_amount": None,
                        "pending_change_at": None,
                        "previous_status": sub.status,
                    }
                ), ChangeType.CANCEL

            if sub.status is S.PENDING_CANCEL:
                return None, ChangeType.CANCEL_SCHEDULED
            if sub.status not in (S.ACTIVE, S.TRIALING):
                raise self._illegal(
                    f"Cannot schedule cancellation of a {sub.status.value} subscription",
                    tenant_id, sub, "cancel",
                )
            return sub.model_copy(
                update={
                    "status": S.PENDING_CANCEL,
                    "cancel_at": sub.current_period_end,
                    "previous_status": sub.status,
                }
            ), ChangeType.CANCEL_SCHEDULED

        return await self._run(tenant_id, "cancel", mutate)

    async def reactivate(self, tenant_id: str) -> TransitionResult:
        """Withdraw a scheduled cancellation."""

        async def mutate(current: Subscription | None, now: datetime) -> Mutation:
            sub = self._require_record(current, tenant_id, "reactivate")
            if sub.status in (S.ACTIVE, S.TRIALING) and sub.cancel_at is None:
                return None, ChangeType.REACTIVATE
            if sub.status is not S.PENDING_CANCEL:
                raise self._illegal(
                    "Only a pending cancellation can be withdrawn", tenant_id, sub, "reactivate"
                )
            return sub.model_copy(
                update={
                    "status": sub.previous_status or S.ACTIVE,
                    "cancel_at": None,
                    "previous_status": None,
                }
            ), ChangeType.REACTIVATE

        return await self._run(tenant_id, "reactivate", mutate)

    async def renew(self, tenant_id: str) -> TransitionResult:
        """Close the current period: cancel if scheduled, else roll to the next one.

        Acts only once the renewal is due, so repeated triggers for the same
        period are no-ops.
        """

        async def mutate(current: Subscription | None, now: datetime) -> Mutation:
            sub = self._require_record(current, tenant_id, "renew")

            if sub.status is S.CANCELED:
                return None, ChangeType.CANCEL
            if sub.status is S.PENDING_CANCEL:
                if sub.cancel_at is not None and sub.cancel_at <= now:
                    return sub.model_copy(
                        update={
                            "status": S.CANCELED,
                            "next_billing_date": None,
                            "pending_plan": None,
                            "pending_amount": None,
                            "pending_change_at": None,
                        }
                    ), ChangeType.CANCEL
                return None, ChangeType.RENEW
            if sub.status is S.TRIALING and sub.pending_plan is None:
                raise self._illegal(
                    "Trial has no reserved plan to convert to", tenant_id, sub, "renew"
                )
            if sub.status not in (S.ACTIVE, S.TRIALING):
                raise self._illegal(
                    f"Cannot renew a {sub.status.value} subscription", tenant_id, sub, "renew"
                )

            due_at = sub.next_billing_date or sub.current_period_end
            if due_at > now:
                return None, ChangeType.RENEW

            plan = sub.pending_plan or sub.plan
            start = sub.current_period_end
            end = self._catalog.period_end(plan, start)
            changes: dict[str, object] = {
                "plan": plan,
                "status": S.ACTIVE,
                "current_period_start": start,
                "current_period_end": end,
                "next_billing_date": end,
                "pending_plan": None,
                "pending_amount": None,
                "pending_change_at": None,
                "previous_status": None,
            }
            if plan != sub.plan:
                changes.update(
                    price_policy=PricePolicy.STANDARD,
                    price_protected_until=None,
                    grandfathered_amount=None,
                    price_override=None,
                )
            renewed = sub.model_copy(update=changes)
            renewed = renewed.model_copy(update={"amount": await self._pricing.price_for(renewed)})
            return renewed, ChangeType.RENEW

        return await self._run(tenant_id, "renew", mutate)

    async def mark_past_due(self, tenant_id: str) -> TransitionResult:
        async def mutate(current: Subscription | None, now: datetime) -> Mutation:
            sub = self._require_record(current, tenant_id, "mark_past_due")
            if sub.status is S.PAST_DUE:
                return None, ChangeType.PAST_DUE
            if sub.status is not S.ACTIVE:
                raise self._illegal(
                    "Only an active subscription can become past due", tenant_id, sub, "mark_past_due"
                )
            return sub.model_copy(
                update={"status": S.PAST_DUE, "retry_count": max(sub.retry_count, 1)}
            ), ChangeType.PAST_DUE

        return await self._run(tenant_id, "mark_past_due", mutate)

    async def record_failed_retry(self, tenant_id: str) -> TransitionResult:
        """Count another failed charge against a past-due subscription."""

        async def mutate(current: Subscription | None, now: datetime) -> Mutation:
            sub = self._require_status(current, tenant_id, "record_failed_retry", {S.PAST_DUE})
            return sub.model_copy(update={"retry_count": sub.retry_count + 1}), ChangeType.PAST_DUE

        return await self._run(tenant_id, "record_failed_retry", mutate)

    async def mark_active(self, tenant_id: str) -> TransitionResult:
        async def mutate(current: Subscription | None, now: datetime) -> Mutation:
            sub = self._require_record(current, tenant_id, "mark_active")
            if sub.status is S.ACTIVE:
                if sub.retry_count == 0:
                    return None, ChangeType.RECOVER
                return sub.model_copy(update={"retry_count": 0}), ChangeType.RECOVER
            if sub.status not in (S.PAST_DUE, S.SUSPENDED):
                raise self._illegal(
                    f"Cannot reactivate billing for a {sub.status.value} subscription",
                    tenant_id, sub, "mark_active",
                )
            return sub.model_copy(
                update={"status": S.ACTIVE, "retry_count": 0}
            ), ChangeType.RECOVER

        return await self._run(tenant_id, "mark_active", mutate)

    async def suspend(self, tenant_id: str) -> TransitionResult:
        async def mutate(current: Subscription | None, now: datetime) -> Mutation:
            sub = self._require_record(current, tenant_id, "suspend")
            if sub.status is S.SUSPENDED:
                return None, ChangeType.SUSPEND
            if sub.status is not S.PAST_DUE:
                raise self._illegal(
                    "Only a past-due subscription can be suspended", tenant_id, sub, "suspend"
                )
            return sub.model_copy(update={"status": S.SUSPENDED}), ChangeType.SUSPEND

        return await self._run(tenant_id, "suspend", mutate)

    async def expire_trial(self, tenant_id: str) -> TransitionResult:
        async def mutate(current: Subscription | None, now: datetime) -> Mutation:
            sub = self._require_record(current, tenant_id, "expire_trial")
            if sub.status is S.EXPIRED:
                return None, ChangeType.EXPIRE
            if sub.status is not S.TRIALING:
                raise self._illegal(
                    "Only a trialing subscription can expire", tenant_id, sub, "expire_trial"
                )
            return sub.model_copy(
                update={
                    "status": S.EXPIRED,
                    "next_billing_date": None,
                    "pending_plan": None,
                    "pending_amount": None,
                    "pending_change_at": None,
                }
            ), ChangeType.EXPIRE

        return await self._run(tenant_id, "expire_trial", mutate)

    # ── Internals ────────────────────────────────────────────────

    async def _run(
        self,
        tenant_id: str,
        transition: str,
        mutate: Callable[[Subscription | None, datetime], Awaitable[Mutation]],
    ) -> TransitionResult:
        async with self._repo.lock(tenant_id):
            current = await self._repo.get(tenant_id)
            now = self._clock()
            updated, change_type = await mutate(current, now)

            if updated is None:
                if current is None:
                    raise self._illegal(
                        "No subscription exists for this tenant", tenant_id, None, transition
                    )
                log.info(
                    "subscription_transition_noop",
                    tenant_id=tenant_id,
                    transition=transition,
                    status=current.status.value,
                )
                return TransitionResult(current, current, change_type, changed=False)

            updated = updated.model_copy(update={"updated_at": now})
            await self._repo.save(updated)

        log.info(
            "subscription_transition",
            tenant_id=tenant_id,
            transition=transition,
            change_type=change_type.value,
            from_status=current.status.value if current else None,
            to_status=updated.status.value,
            plan=updated.plan,
        )
        return TransitionResult(current, updated, change_type)

    def _require_record(
        self, current: Subscription | None, tenant_id: str, transition: str
    ) -> Subscription:
        if current is None:
            raise self._illegal("No subscription exists for this tenant", tenant_id, None, transition)
        return current

    def _require_status(
        self,
        current: Subscription | None,
        tenant_id: str,
        transition: str,
        allowed: frozenset[SubscriptionStatus] | set[SubscriptionStatus],
    ) -> Subscription:
        sub = self._require_record(current, tenant_id, transition)
        if sub.status not in allowed:
            raise self._illegal(
                f"Not allowed while the subscription is {sub.status.value}",
                tenant_id, sub, transition,
            )
        return sub

    def _require_plan(
        self, plan: str, tenant_id: str, current: Subscription | None, transition: str
    ) -> None:
        if not self._catalog.is_known(plan):
            raise self._illegal(f"Unknown plan '{plan}'", tenant_id, current, transition)

    @staticmethod
    def _illegal(
        reason: str, tenant_id: str, current: Subscription | None, transition: str
    ) -> IllegalTransitionError:
        return IllegalTransitionError(
            reason,
            tenant_id=tenant_id,
            current_status=current.status.value if current else None,
            transition=transition,
        )
