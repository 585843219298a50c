from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from chronojob.api.routes.dispatch import router as dispatch_router
from chronojob.api.routes.health import router as health_router
from chronojob.api.routes.jobs import router as jobs_router
from chronojob.core.config import get_settings
from chronojob.core.logging import configure_logging
from chronojob.db.init_db import initialize_database

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    initialize_database()
    if not settings.dispatch_auth_enabled:
        logger.warning("CHRONOJOB_DISPATCH_SECRET is not set; POST /api/v1/dispatch is unauthenticated")
    if settings.auth_soft_fail:
        logger.warning("Authorization soft-fail is enabled (environment=%s)", settings.environment)
    yield


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(dispatch_router, prefix="/api/v1")
    app.include_router(jobs_router, prefix="/api/v1")
    return app
