"""Calendar sync API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler that opens the database pool and wires the sync services
- Health endpoint at GET /api/health
- The calendar-sync and OAuth callback routers
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from timeblock_sync.api.middleware import register_error_handlers
from timeblock_sync.api.routers.calendar_sync import router as calendar_sync_router
from timeblock_sync.api.routers.oauth import router as oauth_router
from timeblock_sync.config import SyncSettings, load_settings
from timeblock_sync.db import Database
from timeblock_sync.service import SyncServices, build_postgres_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle for the DB pool and the sync services.

    Services injected through :func:`create_app` are left alone; only the
    ones built here are torn down here.
    """
    if getattr(app.state, "services", None) is not None:
        yield
        return

    settings: SyncSettings = app.state.settings
    db = Database.from_config(settings.database)
    services: SyncServices | None = None
    try:
        pool = await db.connect()
        services = build_postgres_services(settings, pool)
        app.state.services = services
        logger.info("Calendar sync services initialized")
    except Exception:
        logger.exception("Failed to initialize calendar sync services; endpoints will return 503")

    yield

    if services is not None:
        await services.aclose()
    await db.close()
    app.state.services = None


def create_app(
    settings: SyncSettings | None = None,
    services: SyncServices | None = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    settings:
        Loaded configuration.  Defaults to :func:`load_settings`, or to the
        injected services' settings when *services* is given.
    services:
        Pre-built components (tests, embedding).  When omitted the lifespan
        handler builds Postgres-backed services on startup.
    cors_origins:
        Allowed CORS origins.  Defaults to the OAuth default origin.
    """
    if settings is None:
        settings = services.settings if services is not None else load_settings()
    if cors_origins is None:
        cors_origins = [settings.oauth.default_origin]

    app = FastAPI(
        title="Timeblock Calendar Sync API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False
    app.state.settings = settings
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(calendar_sync_router)
    app.include_router(oauth_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
