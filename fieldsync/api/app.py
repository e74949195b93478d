from __future__ import annotations

from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from fieldsync.api.routes.connectivity import router as connectivity_router
from fieldsync.api.routes.health import router as health_router
from fieldsync.api.routes.jobs import router as jobs_router
from fieldsync.api.routes.navigation import router as navigation_router
from fieldsync.api.routes.sync import router as sync_router
from fieldsync.core.config import Settings, get_settings
from fieldsync.core.logging import configure_logging
from fieldsync.offline.runtime import OfflineRuntime


def create_app(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    start_background: bool = True,
) -> FastAPI:
    effective_settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(effective_settings.log_level)
        runtime = OfflineRuntime(effective_settings, transport=transport)
        await runtime.init(start_background=start_background)
        app.state.runtime = runtime
        try:
            yield
        finally:
            await runtime.dispose()

    app = FastAPI(title=effective_settings.app_name, lifespan=lifespan)
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(sync_router, prefix="/api/v1")
    app.include_router(jobs_router, prefix="/api/v1")
    app.include_router(navigation_router, prefix="/api/v1")
    app.include_router(connectivity_router, prefix="/api/v1")
    return app
