"""FastAPI application entrypoint.

Builds the IntegrationSyncService at startup, includes the integrations
router, and exposes a healthcheck endpoint.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from adsync.deps import Settings, get_settings
from adsync.routers import integrations as integrations_router
from adsync.services.integration_service import IntegrationSyncService
from adsync.telemetry import init_sentry
from adsync.utils.env import load_env_file

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    sync_service: Optional[IntegrationSyncService] = None,
) -> FastAPI:
    """Create the API app.

    Args:
        settings: Defaults to environment settings.
        sync_service: Pre-built service (tests); otherwise built on startup
            and closed on shutdown.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.sync_service is None
        if owned:
            app.state.sync_service = IntegrationSyncService.build(settings)
            logger.info("[STARTUP] Sync service ready (environment=%s)", settings.ENVIRONMENT)
        try:
            yield
        finally:
            if owned:
                await app.state.sync_service.aclose()

    app = FastAPI(
        title="adsync API",
        description="Ad platform integrations: OAuth linking, background metric sync, normalized metrics.",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.sync_service = sync_service

    init_sentry(settings.SENTRY_DSN, settings.ENVIRONMENT)
    integrations_router.register_error_handlers(app)
    app.include_router(integrations_router.router)

    @app.get("/health", tags=["Health"], summary="Health check")
    def health():
        return {"status": "ok"}

    return app


load_env_file()
app = create_app()
