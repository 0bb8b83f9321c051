from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from toil_ledger.api.health import router as health_router
from toil_ledger.api.router import api_router
from toil_ledger.config import get_settings
from toil_ledger.exceptions import setup_exception_handlers
from toil_ledger.middleware import setup_middleware
from toil_ledger.services.toil import TOILService

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from toil_ledger.config import Settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Start the TOIL service on startup and drain it on shutdown."""
    settings: Settings = app.state.settings
    logger.info("Starting %s v%s [%s]", settings.app_name, settings.app_version, settings.environment)
    service = TOILService(settings)
    await service.start()
    app.state.toil = service
    try:
        yield
    finally:
        await service.stop()
        app.state.toil = None
        logger.info("Shutting down %s", settings.app_name)


def create_app(settings: Settings | None = None) -> FastAPI:
    """Application factory."""
    settings = settings or get_settings()

    application = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        debug=settings.debug,
        lifespan=lifespan,
        docs_url="/docs" if settings.environment != "production" else None,
        redoc_url="/redoc" if settings.environment != "production" else None,
    )
    application.state.settings = settings
    application.state.toil = None

    setup_middleware(application, settings)
    setup_exception_handlers(application)

    application.include_router(health_router)
    application.include_router(api_router)

    return application


app = create_app()
