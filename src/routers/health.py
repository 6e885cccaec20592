"""Service index and health check — public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter

from src.dependencies import AppSettings, Services

router = APIRouter(tags=["system"])
logger = logging.getLogger("whoop_bridge.health")


@router.get("/")
async def index(settings: AppSettings) -> dict:
    """Describe the service and its main endpoints."""
    return {
        "status": "ok",
        "service": settings.app_name,
        "endpoints": {
            "auth": "/auth/start, /auth/callback, /auth/status",
            "whoop": "/whoop/sleep/latest, /whoop/recovery/latest, /whoop/summary/today",
        },
    }


@router.get("/health")
async def health_check(settings: AppSettings, services: Services) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also reports whether a WHOOP credential is currently stored.
    """
    authorized = services.store.load() is not None
    if not authorized:
        logger.info("Health check: no WHOOP credential stored")

    return {
        "status": "healthy" if authorized else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "whoop": "authorized" if authorized else "authorization required",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
