"""Subscription service: transition, then history, then the tenant mirror.

Also the entry point for the external billing scheduler and payment gateway
(``on_renewal_due``, ``on_payment_result``, ``on_trial_elapsed``). All three
are safe to call more than once for the same tenant and period; payment
results are deduplicated by the gateway attempt id.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from src.core.constants import MAX_PAYMENT_FAILURES
from src.core.logging import get_logger
from src.core.types import (
    Actor,
    CancelEffective,
    ChangeMode,
    ChangeType,
    PricePolicy,
    SubscriptionStatus,
)
from src.saas.history import SubscriptionHistory
from src.saas.idempotency import IdempotencyLedger
from src.saas.models import Subscription, TransitionResult
from src.saas.pricing import (
    BulkPolicyResult,
    PricePolicyEngine,
    calculate_refund_amount,
    prorate_plan_change,
)
from src.saas.subscription import SubscriptionStateMachine
from src.saas.tenant_sync import TenantSyncPropagator

log = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ProratedResult:
    """A transition plus the money it implies (positive: charge, negative: refund)."""

    result: TransitionResult
    amount: int


class SubscriptionService:
    def __init__(
        self,
        machine: SubscriptionStateMachine,
        pricing: PricePolicyEngine,
        history: SubscriptionHistory,
        tenant_sync: TenantSyncPropagator,
        idempotency: IdempotencyLedger,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.machine = machine
        self.pricing = pricing
        self.history = history
        self.tenant_sync = tenant_sync
        self.idempotency = idempotency
        self._clock = clock

    async def get(self, tenant_id: str) -> Subscription | None:
        return await self.machine.get(tenant_id)

    # ── Admin / user actions ─────────────────────────────────────

    async def start(
        self,
        tenant_id: str,
        plan: str,
        *,
        email: str | None = None,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        actor: Actor = Actor.ADMIN,
        note: str | None = None,
    ) -> TransitionResult:
        result = await self.machine.start(
            tenant_id, plan, email=email, period_start=period_start, period_end=period_end
        )
        return await self._publish(result, actor, note)

    async def change_plan(
        self,
        tenant_id: str,
        new_plan: str,
        mode: ChangeMode,
        *,
        actor: Actor = Actor.ADMIN,
        note: str | None = None,
    ) -> ProratedResult:
        result = await self.machine.change_plan(tenant_id, new_plan, mode)
        await self._publish(result, actor, note)
        amount = 0
        if mode is ChangeMode.IMMEDIATE and result.changed and result.previous is not None:
            amount = prorate_plan_change(result.previous, result.current, self._clock().date())
        return ProratedResult(result, amount)

    async def cancel_pending_plan(
        self, tenant_id: str, *, actor: Actor = Actor.ADMIN, note: str | None = None
    ) -> TransitionResult:
        return await self._publish(await self.machine.cancel_pending_plan(tenant_id), actor, note)

    async def adjust_period(
        self,
        tenant_id: str,
        period_end: datetime,
        next_billing_date: datetime | None = None,
        *,
        period_start: datetime | None = None,
        actor: Actor = Actor.ADMIN,
        note: str | None = None,
    ) -> TransitionResult:
        result = await self.machine.adjust_period(
            tenant_id, period_end, next_billing_date, period_start=period_start
        )
        return await self._publish(result, actor, note)

    async def cancel(
        self,
        tenant_id: str,
        effective: CancelEffective,
        *,
        actor: Actor = Actor.ADMIN,
        note: str | None = None,
    ) -> ProratedResult:
        result = await self.machine.cancel(tenant_id, effective)
        await self._publish(result, actor, note)
        refund = 0
        previous = result.previous
        if (
            effective is CancelEffective.IMMEDIATE
            and result.changed
            and previous is not None
            and previous.next_billing_date is not None
        ):
            refund = calculate_refund_amount(
                previous.amount,
                previous.current_period_start,
                previous.next_billing_date,
                self._clock().date(),
            )
        return ProratedResult(result, -refund)

    async def reactivate(
        self, tenant_id: str, *, actor: Actor = Actor.ADMIN, note: str | None = None
    ) -> TransitionResult:
        return await self._publish(await self.machine.reactivate(tenant_id), actor, note)

    async def apply_price_policy(
        self,
        tenant_id: str,
        policy: PricePolicy,
        *,
        protected_until: datetime | None = None,
        new_plan_price: int | None = None,
        actor: Actor = Actor.ADMIN,
        note: str | None = None,
    ) -> TransitionResult:
        result = await self.pricing.apply_policy(
            tenant_id, policy, protected_until=protected_until, new_plan_price=new_plan_price
        )
        return await self._publish(result, actor, note)

    async def bulk_apply_price_policy(
        self,
        plan: str,
        policy: PricePolicy,
        *,
        protected_until: datetime | None = None,
        new_plan_price: int | None = None,
        actor: Actor = Actor.ADMIN,
        note: str | None = None,
    ) -> BulkPolicyResult:
        outcome = await self.pricing.bulk_apply(
            plan, policy, protected_until=protected_until, new_plan_price=new_plan_price
        )
        for result in outcome.results:
            await self._publish(result, actor, note)
        return outcome

    # ── Billing triggers ─────────────────────────────────────────

    async def on_renewal_due(self, tenant_id: str) -> TransitionResult:
        current = await self.machine.get(tenant_id)
        if current is not None and current.status in (
            SubscriptionStatus.PAST_DUE,
            SubscriptionStatus.SUSPENDED,
        ):
            # Outstanding charge; the gateway retry decides the outcome.
            log.info("renewal_deferred", tenant_id=tenant_id, status=current.status.value)
            return TransitionResult(current, current, ChangeType.RENEW, changed=False)
        return await self._publish(await self.machine.renew(tenant_id), Actor.SYSTEM, None)

    async def on_payment_result(
        self, tenant_id: str, success: bool, *, attempt_id: str | None = None
    ) -> TransitionResult:
        """Apply a gateway charge outcome. A repeated ``attempt_id`` changes nothing."""
        if attempt_id is None:
            return await self._apply_payment_result(tenant_id, success)

        key = IdempotencyLedger.key("payment", tenant_id, attempt_id)
        if not await self.idempotency.claim(key):
            current = await self.machine.get(tenant_id)
            if current is not None:
                log.info("payment_result_duplicate", tenant_id=tenant_id, attempt_id=attempt_id)
                change_type = ChangeType.RECOVER if success else ChangeType.PAST_DUE
                return TransitionResult(current, current, change_type, changed=False)
            return await self._apply_payment_result(tenant_id, success)

        try:
            return await self._apply_payment_result(tenant_id, success)
        except Exception:
            await self.idempotency.release(key)
            raise

    async def on_trial_elapsed(self, tenant_id: str) -> TransitionResult:
        current = await self.machine.get(tenant_id)
        if current is None:
            return await self._publish(await self.machine.expire_trial(tenant_id), Actor.SYSTEM, None)

        if current.status is not SubscriptionStatus.TRIALING:
            log.info("trial_elapsed_ignored", tenant_id=tenant_id, status=current.status.value)
            return TransitionResult(current, current, ChangeType.EXPIRE, changed=False)
        if current.current_period_end > self._clock():
            log.info(
                "trial_elapsed_early",
                tenant_id=tenant_id,
                period_end=current.current_period_end.isoformat(),
            )
            return TransitionResult(current, current, ChangeType.EXPIRE, changed=False)

        if current.pending_plan is not None:
            return await self._publish(await self.machine.renew(tenant_id), Actor.SYSTEM, "trial converted")
        return await self._publish(await self.machine.expire_trial(tenant_id), Actor.SYSTEM, None)

    # ── Internals ────────────────────────────────────────────────

    async def _apply_payment_result(self, tenant_id: str, success: bool) -> TransitionResult:
        if success:
            return await self._publish(await self.machine.mark_active(tenant_id), Actor.SYSTEM, None)

        current = await self.machine.get(tenant_id)
        if current is not None and current.status is SubscriptionStatus.SUSPENDED:
            return TransitionResult(current, current, ChangeType.SUSPEND, changed=False)
        if current is not None and current.status is SubscriptionStatus.PAST_DUE:
            result = await self.machine.record_failed_retry(tenant_id)
        else:
            result = await self.machine.mark_past_due(tenant_id)
        await self._publish(result, Actor.SYSTEM, f"payment failure #{result.current.retry_count}")

        if result.current.retry_count >= MAX_PAYMENT_FAILURES:
            log.warning(
                "subscription_suspending",
                tenant_id=tenant_id,
                failures=result.current.retry_count,
            )
            result = await self._publish(
                await self.machine.suspend(tenant_id), Actor.SYSTEM, "repeated payment failures"
            )
        return result

    async def _publish(
        self, result: TransitionResult, actor: Actor, note: str | None
    ) -> TransitionResult:
        if not result.changed:
            return result
        await self.history.record(result, actor, note)
        self.tenant_sync.dispatch(result.current.tenant_id, result.current.view())
        return result
