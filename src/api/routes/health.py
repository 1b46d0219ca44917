"""Health check endpoint: no auth required."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from src.api.deps import Services, get_services
from src.api.models.schemas import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(services: Services = Depends(get_services)) -> HealthResponse:
    settings = services.settings
    return HealthResponse(
        status="ok",
        version="0.1.0",
        environment=settings.app_env,
        store_backend=settings.store_backend,
    )
