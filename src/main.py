"""Whoop Bridge API — FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 3000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.config import Settings, get_settings
from src.middleware.api_key import ApiKeyMiddleware
from src.routers import auth, health, whoop
from src.whoop.base import ApiError, AuthRequired, NoData
from src.whoop.services import WhoopServices

# ---------- Logging ----------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("whoop_bridge")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings: Settings = app.state.settings
    logger.info(
        "Starting Whoop Bridge v%s [%s]",
        settings.app_version,
        settings.environment,
    )
    yield
    await app.state.whoop.aclose()
    logger.info("Whoop Bridge shut down")


# ---------- Error translation ----------

async def _auth_required(request: Request, exc: AuthRequired) -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={"error": "AUTH_REQUIRED", "message": "Please authorize at /auth/start"},
    )


async def _no_data(request: Request, exc: NoData) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": "NO_DATA", "message": exc.message})


async def _api_error(request: Request, exc: ApiError) -> JSONResponse:
    logger.error("WHOOP API error on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content={
            "error": "API_ERROR",
            "message": exc.message or "WHOOP API request failed",
            "upstream_status": exc.status,
        },
    )


async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s", request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "INTERNAL_ERROR", "message": "An unexpected error occurred"},
    )


# ---------- App factory ----------

def create_app(
    settings: Settings | None = None,
    services: WhoopServices | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())

    app = FastAPI(
        title="Whoop Bridge API",
        description=(
            "Single-user WHOOP bridge: OAuth token lifecycle plus simplified, "
            "aggregated health endpoints for an LLM assistant."
        ),
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.whoop = services or WhoopServices.from_settings(settings)

    # Internal API key on /whoop/*
    app.add_middleware(ApiKeyMiddleware, settings=settings)

    app.add_exception_handler(AuthRequired, _auth_required)
    app.add_exception_handler(NoData, _no_data)
    app.add_exception_handler(ApiError, _api_error)
    app.add_exception_handler(Exception, _unhandled)

    # ---------- Routes ----------
    app.include_router(health.router)
    app.include_router(auth.router)
    app.include_router(whoop.router)

    return app


app = create_app()
