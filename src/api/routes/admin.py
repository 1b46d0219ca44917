"""Back-office admin routes: login, admin accounts and the role permission table."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from src.api.deps import Services, get_services, require_admin, require_permission
from src.api.middleware import (
    clear_session_cookie,
    failure_to_http,
    read_session_id,
    set_session_cookie,
)
from src.api.models.schemas import (
    AdminCreate,
    AdminMeResponse,
    AdminOut,
    AdminRoleUpdate,
    LoginRequest,
    RolePermissionsBody,
)
from src.core.types import AdminRole, AuthFailure, SessionType
from src.saas.models import AdminAccount, AdminSession
from src.saas.permissions import PERMISSIONS

router = APIRouter(prefix="/admin", tags=["admin"])


def _out(admin: AdminAccount) -> AdminOut:
    return AdminOut(
        id=admin.id,
        login_id=admin.login_id,
        name=admin.name,
        role=admin.role,
        last_login_at=admin.last_login_at,
    )


async def _granted(services: Services, role: AdminRole) -> list[str]:
    if role is AdminRole.OWNER:
        return sorted(PERMISSIONS)
    table = await services.permissions.loader.load()
    return sorted(table.get(role.value, frozenset()))


# ── Auth ──────────────────────────────────────────────────────────


@router.post("/auth/login", response_model=AdminMeResponse)
async def admin_login(
    body: LoginRequest,
    response: Response,
    services: Services = Depends(get_services),
) -> AdminMeResponse:
    outcome = await services.logins.admin_login(body.login_id, body.password)
    if isinstance(outcome, AuthFailure):
        if outcome is AuthFailure.UNAUTHENTICATED:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid login id or password",
            )
        raise failure_to_http(outcome)

    set_session_cookie(
        response, services.sessions.kind(SessionType.ADMIN), outcome.id, services.settings
    )
    return AdminMeResponse(
        admin_id=outcome.principal_id,
        login_id=outcome.login_id,
        name=outcome.name,
        role=outcome.role,
        permissions=await _granted(services, outcome.role),
    )


@router.post("/auth/logout")
async def admin_logout(request: Request, services: Services = Depends(get_services)) -> Response:
    kind = services.sessions.kind(SessionType.ADMIN)
    await services.sessions.revoke(SessionType.ADMIN, read_session_id(request, kind))
    response = Response(status_code=status.HTTP_200_OK)
    clear_session_cookie(response, kind)
    return response


@router.get("/auth/me", response_model=AdminMeResponse)
async def admin_me(
    admin: AdminSession = Depends(require_admin),
    services: Services = Depends(get_services),
) -> AdminMeResponse:
    return AdminMeResponse(
        admin_id=admin.principal_id,
        login_id=admin.login_id,
        name=admin.name,
        role=admin.role,
        permissions=await _granted(services, admin.role),
    )


# ── Admin accounts ────────────────────────────────────────────────


@router.get("/admins", response_model=list[AdminOut])
async def list_admins(
    _: AdminSession = Depends(require_permission("admins:read")),
    services: Services = Depends(get_services),
) -> list[AdminOut]:
    return [_out(a) for a in await services.admins.list_admins()]


@router.post("/admins", response_model=AdminOut, status_code=status.HTTP_201_CREATED)
async def create_admin(
    body: AdminCreate,
    _: AdminSession = Depends(require_permission("admins:write")),
    services: Services = Depends(get_services),
) -> AdminOut:
    admin = await services.admins.create_admin(body.login_id, body.password, body.name, body.role)
    return _out(admin)


@router.patch("/admins/{admin_id}/role", response_model=AdminOut)
async def change_admin_role(
    admin_id: str,
    body: AdminRoleUpdate,
    _: AdminSession = Depends(require_permission("admins:write")),
    services: Services = Depends(get_services),
) -> AdminOut:
    return _out(await services.admins.change_role(admin_id, body.role))


@router.delete("/admins/{admin_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_admin(
    admin_id: str,
    acting: AdminSession = Depends(require_permission("admins:delete")),
    services: Services = Depends(get_services),
) -> Response:
    await services.admins.delete_admin(admin_id, acting_admin_id=acting.principal_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ── Role permission table ─────────────────────────────────────────


@router.get("/permissions", response_model=RolePermissionsBody)
async def get_role_permissions(
    _: AdminSession = Depends(require_permission("settings:read")),
    services: Services = Depends(get_services),
) -> RolePermissionsBody:
    table = await services.permissions.loader.load()
    return RolePermissionsBody(permissions={role: sorted(perms) for role, perms in table.items()})


@router.put("/permissions", response_model=RolePermissionsBody)
async def put_role_permissions(
    body: RolePermissionsBody,
    _: AdminSession = Depends(require_permission("settings:write")),
    services: Services = Depends(get_services),
) -> RolePermissionsBody:
    """Replace the role overlay. Unknown permission names are dropped; owner is never stored."""
    known = set(PERMISSIONS)
    cleaned = {
        role: [p for p in perms if p in known]
        for role, perms in body.permissions.items()
        if role in {r.value for r in AdminRole} and role != AdminRole.OWNER.value
    }
    await services.permissions.loader.save(cleaned)
    table = await services.permissions.loader.load()
    return RolePermissionsBody(permissions={role: sorted(perms) for role, perms in table.items()})
