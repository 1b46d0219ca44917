"""Plan catalog and billing-period arithmetic."""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime

from src.core.constants import COLLECTION_PLANS
from src.core.exceptions import StoreUnavailableError
from src.core.logging import get_logger
from src.store.base import CredentialStore

log = get_logger(__name__)


@dataclass(frozen=True)
class Plan:
    plan_id: str
    name: str
    price: int
    is_trial: bool = False
    period_months: int = 1


DEFAULT_PLANS: dict[str, Plan] = {
    "trial": Plan("trial", "Trial", 0, is_trial=True),
    "basic": Plan("basic", "Basic", 39_000),
    "business": Plan("business", "Business", 99_000),
    "enterprise": Plan("enterprise", "Enterprise", 199_000),
}


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


class PlanCatalog:
    """Plan lookup with list-price overrides read from the ``plans`` collection."""

    def __init__(self, store: CredentialStore, plans: dict[str, Plan] | None = None) -> None:
        self._store = store
        self._plans = dict(plans or DEFAULT_PLANS)

    def get(self, plan_id: str) -> Plan | None:
        return self._plans.get(plan_id)

    def is_known(self, plan_id: str) -> bool:
        return plan_id in self._plans

    def is_trial(self, plan_id: str) -> bool:
        plan = self._plans.get(plan_id)
        return plan is not None and plan.is_trial

    @property
    def plan_ids(self) -> list[str]:
        return list(self._plans)

    def period_end(self, plan_id: str, start: datetime) -> datetime:
        plan = self._plans.get(plan_id)
        months = plan.period_months if plan else 1
        return add_months(start, months)

    async def list_price(self, plan_id: str) -> int:
        """Current list price: admin override if present, else the default."""
        plan = self._plans.get(plan_id)
        default = plan.price if plan else 0
        try:
            doc = await self._store.get(COLLECTION_PLANS, plan_id)
        except StoreUnavailableError:
            log.warning("plan_price_fallback", plan=plan_id, price=default)
            return default
        if doc and isinstance(doc.get("price"), int):
            return int(doc["price"])
        return default

    async def set_list_price(self, plan_id: str, price: int) -> None:
        await self._store.set(COLLECTION_PLANS, plan_id, {"planId": plan_id, "price": price})
        log.info("plan_price_set", plan=plan_id, price=price)
