"""FastAPI application factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI

from partysnap.config import get_settings
from partysnap.container import build_container, shutdown_container
from partysnap.gallery.router import router as gallery_router
from partysnap.health.router import router as health_router
from partysnap.middleware import setup_middleware
from partysnap.notifications.router import router as notifications_router

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    container = await build_container(settings)
    app.state.container = container
    logger.info("service_started", environment=settings.environment, providers=container.providers.configured())

    yield

    await shutdown_container(container)
    logger.info("service_stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="PartySnap Notify API",
        description="Push notification dispatch and gallery caching for PartySnap",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(notifications_router)
    app.include_router(gallery_router)

    return app


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    settings = get_settings()
    uvicorn.run("partysnap.main:app", host=settings.host, port=settings.port, reload=settings.debug)
