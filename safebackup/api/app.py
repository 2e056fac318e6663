from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from safebackup.api.routes.backups import router as backups_router
from safebackup.api.routes.health import router as health_router
from safebackup.api.routes.progress import router as progress_router
from safebackup.api.routes.settings import router as settings_router
from safebackup.api.routes.stats import router as stats_router
from safebackup.core.config import get_settings
from safebackup.core.logging import configure_logging
from safebackup.db.init_db import initialize_database
from safebackup.worker.pipeline import reset_workers


@asynccontextmanager
async def lifespan(_app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    initialize_database()
    yield
    reset_workers()


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(backups_router, prefix="/api/v1")
    app.include_router(progress_router, prefix="/api/v1")
    app.include_router(settings_router, prefix="/api/v1")
    app.include_router(stats_router, prefix="/api/v1")
    return app
