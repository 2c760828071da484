"""calsync API — FastAPI application factory.

The app carries:
- a lifespan handler that builds the sync service (pool, HTTP client)
- the push-notification receiver at ``/api/calendar/webhook``
- a health endpoint at ``GET /api/health``
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from calsync import __version__
from calsync.api.deps import init_dependencies, shutdown_dependencies
from calsync.api.middleware import register_error_handlers
from calsync.api.models import HealthResponse
from calsync.api.routers.webhook import router as webhook_router
from calsync.config import CalsyncConfig, resolve_config

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the sync service on startup; close pool and HTTP client on shutdown."""
    config: CalsyncConfig = app.state.config
    await init_dependencies(config)
    try:
        yield
    finally:
        await shutdown_dependencies()


def create_app(config: CalsyncConfig | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    When *config* is omitted it is resolved from ``./calsync.toml`` or the
    environment.
    """
    app = FastAPI(
        title="calsync",
        version=__version__,
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False
    app.state.config = config if config is not None else resolve_config()

    register_error_handlers(app)
    app.include_router(webhook_router)

    @app.get("/api/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse()

    return app
