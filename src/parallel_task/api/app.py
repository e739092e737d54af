"""HTTP API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (the configured app URL is allowed by default)
- Lifespan handler that builds the DB pool, HTTP client and sync components
- Health endpoint at GET /api/health
- Routers for Google connection, calendar sync and task edits
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from parallel_task.api.deps import build_services, close_services
from parallel_task.api.middleware import register_error_handlers
from parallel_task.api.routers.calendar import router as calendar_router
from parallel_task.api.routers.oauth import router as oauth_router
from parallel_task.api.routers.tasks import router as tasks_router
from parallel_task.config import AppConfig, load_config
from parallel_task.core.logging import configure_logging
from parallel_task.core.telemetry import init_telemetry

logger = logging.getLogger(__name__)

SERVICE_NAME = "parallel-task"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle for the DB pool and outbound HTTP client."""
    config: AppConfig = app.state.config
    configure_logging(config.logging.level, config.logging.format)
    init_telemetry(SERVICE_NAME)

    services = await build_services(config)
    app.state.services = services
    logger.info("Parallel Task API started (app_url=%s)", config.app_url)
    try:
        yield
    finally:
        app.state.services = None
        await close_services(services)


def create_app(
    config: AppConfig | None = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Validated configuration.  Loaded with :func:`load_config` when omitted.
    cors_origins:
        Allowed CORS origins.  Defaults to the configured ``app_url``.
    """
    if config is None:
        config = load_config()
    if cors_origins is None:
        cors_origins = [config.app_url.rstrip("/")]

    app = FastAPI(
        title="Parallel Task API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.router.redirect_slashes = False

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(oauth_router)
    app.include_router(calendar_router)
    app.include_router(tasks_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
