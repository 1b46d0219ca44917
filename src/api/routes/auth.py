"""Authentication routes: SSO exchange, end-user session, manager login and billing hand-off."""

from __future__ import annotations

from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import RedirectResponse

from src.api.deps import Services, get_services, require_manager, require_user
from src.api.middleware import (
    clear_session_cookie,
    failure_to_http,
    read_session_id,
    set_session_cookie,
)
from src.api.models.schemas import (
    AuthSessionResponse,
    BillingTokenResponse,
    LoginRequest,
    ManagerSessionResponse,
    TenantAccessIn,
)
from src.core.logging import get_logger
from src.core.types import AuthFailure, SessionType
from src.saas.models import AuthSession, ManagerSession

log = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def _login_redirect(services: Services, failure: AuthFailure) -> RedirectResponse:
    url = f"{services.settings.frontend_url}/login?{urlencode({'error': failure.value})}"
    return RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)


def _safe_next(next_path: str | None) -> str:
    # Only same-site relative paths; anything else lands on the home page.
    if next_path and next_path.startswith("/") and not next_path.startswith("//"):
        return next_path
    return "/"


def _manager_session_out(session: ManagerSession) -> ManagerSessionResponse:
    return ManagerSessionResponse(
        manager_id=session.principal_id,
        login_id=session.login_id,
        name=session.name,
        master_email=session.master_email,
        tenants=[TenantAccessIn.model_validate(t.model_dump()) for t in session.tenants],
        expires_at=session.expires_at,
    )


# ── End users ─────────────────────────────────────────────────────


@router.get("/sso")
async def sso_login(
    token: str = Query(..., min_length=1),
    next_path: str | None = Query(default=None, alias="next"),
    services: Services = Depends(get_services),
) -> RedirectResponse:
    """Exchange a portal SSO token for an auth session cookie."""
    outcome = await services.logins.sso_login(token)
    if isinstance(outcome, AuthFailure):
        log.info("sso_login_rejected", reason=outcome.value)
        return _login_redirect(services, outcome)

    response = RedirectResponse(
        url=f"{services.settings.frontend_url}{_safe_next(next_path)}",
        status_code=status.HTTP_302_FOUND,
    )
    set_session_cookie(
        response, services.sessions.kind(SessionType.AUTH), outcome.id, services.settings
    )
    return response


@router.get("/session", response_model=AuthSessionResponse)
async def get_session(session: AuthSession = Depends(require_user)) -> AuthSessionResponse:
    return AuthSessionResponse(email=session.email, expires_at=session.expires_at)


@router.post("/logout")
async def logout(request: Request, services: Services = Depends(get_services)) -> Response:
    """Revoke the auth session and clear its cookie."""
    kind = services.sessions.kind(SessionType.AUTH)
    await services.sessions.revoke(SessionType.AUTH, read_session_id(request, kind))
    response = Response(status_code=status.HTTP_200_OK)
    clear_session_cookie(response, kind)
    return response


# ── Managers ──────────────────────────────────────────────────────


@router.post("/manager-login", response_model=ManagerSessionResponse)
async def manager_login(
    body: LoginRequest,
    response: Response,
    services: Services = Depends(get_services),
) -> ManagerSessionResponse:
    outcome = await services.logins.manager_login(body.login_id, body.password)
    if isinstance(outcome, AuthFailure):
        if outcome is AuthFailure.UNAUTHENTICATED:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid login id or password",
            )
        raise failure_to_http(outcome)

    set_session_cookie(
        response, services.sessions.kind(SessionType.MANAGER), outcome.id, services.settings
    )
    return _manager_session_out(outcome)


@router.get("/manager-session", response_model=ManagerSessionResponse)
async def manager_session(
    session: ManagerSession = Depends(require_manager),
) -> ManagerSessionResponse:
    return _manager_session_out(session)


@router.post("/manager-logout")
async def manager_logout(request: Request, services: Services = Depends(get_services)) -> Response:
    kind = services.sessions.kind(SessionType.MANAGER)
    await services.sessions.revoke(SessionType.MANAGER, read_session_id(request, kind))
    response = Response(status_code=status.HTTP_200_OK)
    clear_session_cookie(response, kind)
    return response


@router.post("/manager-billing-token", response_model=BillingTokenResponse)
async def manager_billing_token(
    session: ManagerSession = Depends(require_manager),
    services: Services = Depends(get_services),
) -> BillingTokenResponse:
    """Short-lived hand-off token for opening the billing site as this manager."""
    token = services.logins.issue_manager_billing_token(session)
    url = f"{services.settings.frontend_url}/api/auth/manager-sso?{urlencode({'token': token})}"
    log.info("manager_billing_token_issued", manager_id=session.principal_id)
    return BillingTokenResponse(token=token, url=url)


@router.get("/manager-sso")
async def manager_sso(
    token: str = Query(..., min_length=1),
    services: Services = Depends(get_services),
) -> RedirectResponse:
    outcome = await services.logins.manager_billing_login(token)
    if isinstance(outcome, AuthFailure):
        return _login_redirect(services, outcome)

    response = RedirectResponse(
        url=f"{services.settings.frontend_url}/account",
        status_code=status.HTTP_302_FOUND,
    )
    set_session_cookie(
        response, services.sessions.kind(SessionType.MANAGER), outcome.id, services.settings
    )
    return response
