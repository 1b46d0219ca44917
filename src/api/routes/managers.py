"""Manager accounts, administered by the master (end user) who owns them."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from src.api.deps import Services, get_services, require_user
from src.api.models.schemas import ManagerCreate, ManagerOut, ManagerUpdate, TenantAccessIn
from src.saas.models import AuthSession, Manager, TenantAccess

router = APIRouter(prefix="/managers", tags=["managers"])


def _out(manager: Manager) -> ManagerOut:
    return ManagerOut(
        manager_id=manager.manager_id,
        login_id=manager.login_id,
        name=manager.name,
        phone=manager.phone,
        active=manager.active,
        tenants=[TenantAccessIn.model_validate(t.model_dump()) for t in manager.tenants],
        created_at=manager.created_at,
        updated_at=manager.updated_at,
    )


def _access(items: list[TenantAccessIn]) -> list[TenantAccess]:
    return [TenantAccess(tenant_id=i.tenant_id, permissions=i.permissions) for i in items]


@router.get("", response_model=list[ManagerOut])
async def list_managers(
    master: AuthSession = Depends(require_user),
    services: Services = Depends(get_services),
) -> list[ManagerOut]:
    return [_out(m) for m in await services.managers.list_by_master(master.email)]


@router.post("", response_model=ManagerOut, status_code=status.HTTP_201_CREATED)
async def create_manager(
    body: ManagerCreate,
    master: AuthSession = Depends(require_user),
    services: Services = Depends(get_services),
) -> ManagerOut:
    manager = await services.managers.create_manager(
        master.email,
        body.login_id,
        body.password,
        body.name,
        phone=body.phone,
        tenants=_access(body.tenants),
    )
    return _out(manager)


@router.patch("/{manager_id}", response_model=ManagerOut)
async def update_manager(
    manager_id: str,
    body: ManagerUpdate,
    master: AuthSession = Depends(require_user),
    services: Services = Depends(get_services),
) -> ManagerOut:
    manager = await services.managers.update_manager(
        master.email,
        manager_id,
        name=body.name,
        phone=body.phone,
        password=body.password,
        active=body.active,
        tenants=_access(body.tenants) if body.tenants is not None else None,
    )
    return _out(manager)


@router.delete("/{manager_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_manager(
    manager_id: str,
    master: AuthSession = Depends(require_user),
    services: Services = Depends(get_services),
) -> Response:
    await services.managers.delete_manager(master.email, manager_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
