"""Checkout session routes: one short-lived purchase flow per cookie."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from src.api.deps import Services, get_services
from src.api.middleware import failure_to_http, read_session_id, set_session_cookie
from src.api.models.schemas import CheckoutCreate, CheckoutOut, CheckoutUpdate
from src.core.exceptions import IllegalTransitionError
from src.core.types import AuthFailure, SessionType
from src.saas.models import CheckoutSession

router = APIRouter(prefix="/checkout", tags=["checkout"])


def _out(session: CheckoutSession) -> CheckoutOut:
    return CheckoutOut.model_validate(session.model_dump())


async def _buyer_email(request: Request, body: CheckoutCreate, services: Services) -> str:
    """Email from an SSO token in the body, else from the caller's auth session."""
    if body.token:
        identity = await services.tokens.verify(body.token)
        if isinstance(identity, AuthFailure):
            raise failure_to_http(identity)
        return identity.email

    kind = services.sessions.kind(SessionType.AUTH)
    session = await services.sessions.verify_auth_session(read_session_id(request, kind))
    if isinstance(session, AuthFailure):
        raise failure_to_http(session)
    return session.email


@router.post("/session", response_model=CheckoutOut, status_code=201)
async def create_checkout(
    body: CheckoutCreate,
    request: Request,
    response: Response,
    services: Services = Depends(get_services),
) -> CheckoutOut:
    email = await _buyer_email(request, body, services)
    if not services.catalog.is_known(body.plan):
        raise IllegalTransitionError(
            f"Unknown plan '{body.plan}'",
            tenant_id=body.tenant_id or "",
            current_status=None,
            transition="checkout",
        )

    session = await services.sessions.create_checkout_session(
        email,
        body.plan,
        tenant_id=body.tenant_id,
        tenant_name=body.tenant_name,
        is_new_tenant=body.is_new_tenant,
        mode=body.mode,
    )
    set_session_cookie(
        response, services.sessions.kind(SessionType.CHECKOUT), session.id, services.settings
    )
    return _out(session)


@router.get("/session", response_model=CheckoutOut)
async def get_checkout(request: Request, services: Services = Depends(get_services)) -> CheckoutOut:
    kind = services.sessions.kind(SessionType.CHECKOUT)
    outcome = await services.sessions.verify_checkout_session(read_session_id(request, kind))
    if isinstance(outcome, AuthFailure):
        raise failure_to_http(outcome)
    return _out(outcome)


@router.patch("/session", response_model=CheckoutOut)
async def update_checkout(
    body: CheckoutUpdate,
    request: Request,
    services: Services = Depends(get_services),
) -> CheckoutOut:
    kind = services.sessions.kind(SessionType.CHECKOUT)
    outcome = await services.sessions.update_checkout_session(
        read_session_id(request, kind),
        body.status,
        order_id=body.order_id,
        tenant_name=body.tenant_name,
        tenant_id=body.tenant_id,
    )
    if isinstance(outcome, AuthFailure):
        raise failure_to_http(outcome)
    return _out(outcome)
