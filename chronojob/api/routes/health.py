from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from chronojob.core.config import get_settings
from chronojob.jobs.registry import HandlerRegistry, get_handler_registry

router = APIRouter(tags=["health"])


@router.get("/health")
def get_health(registry: HandlerRegistry = Depends(get_handler_registry)) -> dict[str, object]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.environment,
        "dispatch_auth_enabled": settings.dispatch_auth_enabled,
        "job_types": registry.job_types(),
        "timestamp": datetime.now(tz=timezone.utc),
    }
