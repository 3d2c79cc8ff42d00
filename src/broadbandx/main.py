"""
Main FastAPI application entry point for BroadbandX.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from broadbandx.billing.catalog.router import router as plans_router
from broadbandx.billing.exceptions import BillingError
from broadbandx.billing.subscriptions.router import router as subscriptions_router
from broadbandx.db import create_all_tables_async, dispose_engine
from broadbandx.logging import setup_logging
from broadbandx.settings import settings

logger = structlog.get_logger(__name__)


def billing_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render billing errors with their own status code and body."""
    if not isinstance(exc, BillingError):
        raise exc
    if exc.status_code >= 500:
        logger.error("billing.error", error_code=exc.error_code, path=request.url.path)
    else:
        logger.info(
            "billing.request.rejected",
            error_code=exc.error_code,
            status_code=exc.status_code,
            path=request.url.path,
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle events."""
    setup_logging()
    logger.info(
        "service.startup.begin",
        service=settings.app_name,
        version=settings.app_version,
        environment=settings.environment.value,
    )

    if settings.is_development or settings.is_testing:
        await create_all_tables_async()
        logger.info("database.tables.created")

    yield

    await dispose_engine()
    logger.info("service.shutdown.complete")


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        description="Broadband plan catalog and subscription lifecycle API",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
    )

    app.add_exception_handler(BillingError, billing_error_handler)

    app.include_router(plans_router, prefix=settings.api_prefix)
    app.include_router(subscriptions_router, prefix=settings.api_prefix)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "healthy", "version": settings.app_version}

    return app


app = create_application()
