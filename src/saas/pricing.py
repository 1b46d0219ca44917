"""Price policy engine: what a subscriber is charged, independent of list price."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from src.core.exceptions import IllegalTransitionError, PrincipalNotFoundError
from src.core.logging import get_logger
from src.core.types import ChangeType, PricePolicy, SubscriptionStatus
from src.saas.models import Subscription, TransitionResult
from src.saas.plans import PlanCatalog
from src.saas.repository import SubscriptionRepository

log = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def calculate_refund_amount(
    amount: int,
    period_start: datetime,
    next_billing_date: datetime,
    today: date | None = None,
) -> int:
    """Pro-rata refund for the unused days of the current period.

    Days are whole calendar days; today counts as used.
    """
    start = period_start.date()
    end = next_billing_date.date()
    today = today or _utcnow().date()
    total_days = (end - start).days
    if total_days <= 0:
        return 0
    used_days = (today - start).days + 1
    days_left = max(0, total_days - used_days)
    return round(amount / total_days * days_left)


@dataclass
class PolicyBucket:
    count: int = 0
    total_amount: int = 0


@dataclass
class PolicyStats:
    plan: str
    total: int = 0
    by_policy: dict[PricePolicy, PolicyBucket] = field(
        default_factory=lambda: {policy: PolicyBucket() for policy in PricePolicy}
    )


@dataclass
class BulkPolicyResult:
    plan: str
    policy: PricePolicy
    matched: int = 0
    updated: int = 0
    results: list[TransitionResult] = field(default_factory=list)


class PricePolicyEngine:
    """Evaluates grandfathered / protected-until / standard pricing."""

    def __init__(
        self,
        repository: SubscriptionRepository,
        catalog: PlanCatalog,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repo = repository
        self._catalog = catalog
        self._clock = clock

    async def price_for(self, subscription: Subscription) -> int:
        return await self.price_for_plan(subscription, subscription.plan)

    async def price_for_plan(self, subscription: Subscription, plan: str) -> int:
        """Price the subscriber would pay on ``plan`` under its current policy.

        Protection only covers the plan the price was captured on; a move to a
        different plan is charged at that plan's standard price.
        """
        policy = subscription.price_policy
        captured = (
            subscription.grandfathered_amount
            if subscription.grandfathered_amount is not None
            else subscription.amount
        )
        same_plan = plan == subscription.plan

        if same_plan and policy is PricePolicy.GRANDFATHERED:
            return captured
        if same_plan and policy is PricePolicy.PROTECTED_UNTIL:
            until = subscription.price_protected_until
            if until is not None and self._clock() < until:
                return captured
        if same_plan and subscription.price_override is not None:
            return subscription.price_override
        return await self._catalog.list_price(plan)

    async def with_policy(
        self,
        subscription: Subscription,
        policy: PricePolicy,
        *,
        protected_until: datetime | None = None,
        new_plan_price: int | None = None,
    ) -> Subscription:
        """Return ``subscription`` re-priced under ``policy`` (nothing is written)."""
        if policy is PricePolicy.PROTECTED_UNTIL and protected_until is None:
            raise IllegalTransitionError(
                "protected_until policy needs a protection end date",
                tenant_id=subscription.tenant_id,
                current_status=subscription.status.value,
                transition="price_policy",
            )

        already_captured = (
            subscription.price_policy is not PricePolicy.STANDARD
            and subscription.grandfathered_amount is not None
        )
        captured = subscription.grandfathered_amount if already_captured else subscription.amount

        if policy is PricePolicy.STANDARD:
            updated = subscription.model_copy(
                update={
                    "price_policy": policy,
                    "price_protected_until": None,
                    "grandfathered_amount": None,
                    "price_override": (
                        new_plan_price if new_plan_price is not None else subscription.price_override
                    ),
                }
            )
        else:
            updated = subscription.model_copy(
                update={
                    "price_policy": policy,
                    "grandfathered_amount": captured,
                    "price_protected_until": (
                        protected_until if policy is PricePolicy.PROTECTED_UNTIL else None
                    ),
                }
            )
        amount = await self.price_for(updated)
        return updated.model_copy(update={"amount": amount})

    async def apply_policy(
        self,
        tenant_id: str,
        policy: PricePolicy,
        *,
        protected_until: datetime | None = None,
        new_plan_price: int | None = None,
    ) -> TransitionResult:
        async with self._repo.lock(tenant_id):
            current = await self._repo.get(tenant_id)
            if current is None:
                raise PrincipalNotFoundError("Subscription not found", {"tenant_id": tenant_id})
            updated = await self.with_policy(
                current, policy, protected_until=protected_until, new_plan_price=new_plan_price
            )
            if _same_pricing(current, updated):
                return TransitionResult(current, current, ChangeType.PRICE_POLICY, changed=False)

            updated = updated.model_copy(update={"updated_at": self._clock()})
            await self._repo.save(updated)

        log.info(
            "price_policy_applied",
            tenant_id=tenant_id,
            policy=policy.value,
            amount=updated.amount,
            previous_amount=current.amount,
        )
        return TransitionResult(current, updated, ChangeType.PRICE_POLICY)

    async def bulk_apply(
        self,
        plan: str,
        policy: PricePolicy,
        *,
        protected_until: datetime | None = None,
        new_plan_price: int | None = None,
    ) -> BulkPolicyResult:
        """Apply ``policy`` to every active subscriber of ``plan``. Safe to repeat."""
        outcome = BulkPolicyResult(plan=plan, policy=policy)
        for subscription in await self._repo.list_by_plan(plan):
            if subscription.status is not SubscriptionStatus.ACTIVE:
                continue
            outcome.matched += 1
            result = await self.apply_policy(
                subscription.tenant_id,
                policy,
                protected_until=protected_until,
                new_plan_price=new_plan_price,
            )
            if result.changed:
                outcome.updated += 1
            outcome.results.append(result)

        log.info(
            "price_policy_bulk_applied",
            plan=plan,
            policy=policy.value,
            matched=outcome.matched,
            updated=outcome.updated,
        )
        return outcome

    async def policy_stats(self, plan: str) -> PolicyStats:
        """Active subscribers of ``plan`` per price policy, with their summed amounts."""
        stats = PolicyStats(plan)
        for subscription in await self._repo.list_by_plan(plan):
            if subscription.status is not SubscriptionStatus.ACTIVE:
                continue
            bucket = stats.by_policy[subscription.price_policy]
            bucket.count += 1
            bucket.total_amount += subscription.amount
            stats.total += 1
        return stats


def _same_pricing(a: Subscription, b: Subscription) -> bool:
    return (
        a.price_policy == b.price_policy
        and a.amount == b.amount
        and a.grandfathered_amount == b.grandfathered_amount
        and a.price_protected_until == b.price_protected_until
        and a.price_override == b.price_override
    )


def prorate_plan_change(previous: Subscription, current: Subscription, today: date) -> int:
    """Net amount owed for an immediate plan change (negative means a refund).

    Unused days of the old plan are credited and the same days on the new
    plan are charged. A trial converting to a paid plan pays the full amount.
    """
    if previous.status is SubscriptionStatus.TRIALING:
        return current.amount
    billing = previous.next_billing_date or previous.current_period_end
    start = previous.current_period_start
    credit = calculate_refund_amount(previous.amount, start, billing, today)
    charge = calculate_refund_amount(current.amount, start, billing, today)
    return charge - credit
