from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from scanchain.api.routes.duplicates import router as duplicates_router
from scanchain.api.routes.health import router as health_router
from scanchain.api.routes.maintenance import router as maintenance_router
from scanchain.api.routes.scans import router as scans_router
from scanchain.core.config import get_settings
from scanchain.core.logging import configure_logging
from scanchain.db.init_db import initialize_database


@asynccontextmanager
async def lifespan(_app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    initialize_database()
    yield


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(scans_router, prefix="/api/v1")
    app.include_router(duplicates_router, prefix="/api/v1")
    app.include_router(maintenance_router, prefix="/api/v1")
    return app
