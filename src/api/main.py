"""Billing FastAPI application: entry point for the API server."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import cast

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config.settings import Settings, get_settings
from src.api.deps import build_services
from src.core.exceptions import (
    BillingBaseError,
    IllegalTransitionError,
    PrincipalConflictError,
    PrincipalNotFoundError,
    StoreUnavailableError,
    UnauthenticatedError,
    UnauthorizedError,
)
from src.core.logging import get_logger, setup_logging
from src.store import create_store
from src.store.base import CredentialStore

log = get_logger(__name__)

_ERROR_STATUS: list[tuple[type[BillingBaseError], int]] = [
    (UnauthenticatedError, status.HTTP_401_UNAUTHORIZED),
    (UnauthorizedError, status.HTTP_403_FORBIDDEN),
    (IllegalTransitionError, status.HTTP_409_CONFLICT),
    (PrincipalConflictError, status.HTTP_409_CONFLICT),
    (PrincipalNotFoundError, status.HTTP_404_NOT_FOUND),
    (StoreUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


async def _billing_error_handler(request: Request, exc: Exception) -> JSONResponse:
    error = cast(BillingBaseError, exc)
    code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, mapped in _ERROR_STATUS:
        if isinstance(error, error_type):
            code = mapped
            break

    body: dict[str, object] = {"detail": error.message}
    if isinstance(error, IllegalTransitionError):
        body.update(
            transition=error.transition,
            currentStatus=error.current_status,
        )
    log.info("request_rejected", path=request.url.path, status=code, error=type(error).__name__)
    return JSONResponse(status_code=code, content=body)


async def _validation_error_handler(request: Request, exc: Exception) -> JSONResponse:
    errors = cast(RequestValidationError, exc).errors()
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": "Invalid request", "errors": errors},
    )


def create_app(
    settings: Settings | None = None,
    store: CredentialStore | None = None,
    *,
    clock: Callable[[], datetime] | None = None,
    bcrypt_rounds: int | None = None,
) -> FastAPI:
    """Build and return the FastAPI application.

    ``store`` and ``clock`` are injection points for tests; by default the
    store is chosen from settings and owned by the app's lifespan.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Startup/shutdown lifecycle: connect the store and wire services once."""
        log.info("api_starting", env=settings.app_env, store=settings.store_backend)
        backing = store or create_store(settings)
        await backing.connect()
        services = build_services(settings, backing, clock=clock, bcrypt_rounds=bcrypt_rounds)
        app.state.services = services
        yield
        await services.tenant_sync.drain()
        await backing.close()
        log.info("api_shutdown")

    app = FastAPI(
        title="Tenant Billing API",
        description="Sessions, SSO tokens and subscription lifecycle for tenant billing",
        version="0.1.0",
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(BillingBaseError, _billing_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)

    # Register routers
    from src.api.routes.admin import router as admin_router
    from src.api.routes.auth import router as auth_router
    from src.api.routes.billing import router as billing_router
    from src.api.routes.checkout import router as checkout_router
    from src.api.routes.health import router as health_router
    from src.api.routes.managers import router as managers_router
    from src.api.routes.subscriptions import router as subscriptions_router

    app.include_router(health_router, prefix="/api")
    app.include_router(auth_router, prefix="/api")
    app.include_router(checkout_router, prefix="/api")
    app.include_router(managers_router, prefix="/api")
    app.include_router(admin_router, prefix="/api")
    app.include_router(subscriptions_router, prefix="/api")
    app.include_router(billing_router, prefix="/api")

    return app


def main() -> None:
    """Run the API with uvicorn (``billing-api`` console script)."""
    import uvicorn

    settings = get_settings()
    setup_logging(settings.log_level, settings.log_json)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=8000)
