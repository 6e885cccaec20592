"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from src.config import Settings
from src.whoop.aggregation import AggregationEngine
from src.whoop.services import WhoopServices


def get_app_settings(request: Request) -> Settings:
    """Settings the running app was built with (see ``create_app``)."""
    return request.app.state.settings


def get_services(request: Request) -> WhoopServices:
    return request.app.state.whoop


def get_engine(request: Request) -> AggregationEngine:
    return get_services(request).engine


# Annotated shortcuts for route signatures
AppSettings = Annotated[Settings, Depends(get_app_settings)]
Services = Annotated[WhoopServices, Depends(get_services)]
Engine = Annotated[AggregationEngine, Depends(get_engine)]
