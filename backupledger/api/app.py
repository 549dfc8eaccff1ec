from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from backupledger.api.routes.health import router as health_router
from backupledger.api.routes.jobs import router as jobs_router
from backupledger.api.routes.vm_results import router as vm_results_router
from backupledger.core.config import get_settings
from backupledger.core.logging import configure_logging
from backupledger.db.init_db import initialize_database


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
    app.include_router(jobs_router, prefix="/api/v1")
    app.include_router(vm_results_router, prefix="/api/v1")
    return app
