"""Scheduler and payment-gateway triggers. Authenticated with the cron secret."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from src.api.deps import Services, get_services, require_cron
from src.api.models.schemas import BillingTrigger, PaymentResult, TransitionResponse
from src.api.routes.subscriptions import transition_out

router = APIRouter(prefix="/billing", tags=["billing"], dependencies=[Depends(require_cron)])


@router.post("/renewal-due", response_model=TransitionResponse)
async def renewal_due(
    body: BillingTrigger,
    services: Services = Depends(get_services),
) -> TransitionResponse:
    return transition_out(await services.subscriptions.on_renewal_due(body.tenant_id))


@router.post("/payment-result", response_model=TransitionResponse)
async def payment_result(
    body: PaymentResult,
    services: Services = Depends(get_services),
) -> TransitionResponse:
    result = await services.subscriptions.on_payment_result(
        body.tenant_id, body.success, attempt_id=body.attempt_id
    )
    return transition_out(result)


@router.post("/trial-elapsed", response_model=TransitionResponse)
async def trial_elapsed(
    body: BillingTrigger,
    services: Services = Depends(get_services),
) -> TransitionResponse:
    return transition_out(await services.subscriptions.on_trial_elapsed(body.tenant_id))
