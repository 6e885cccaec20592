"""WHOOP data endpoints consumed by the assistant.

Every handler is a thin call into the aggregation engine.  ``AuthRequired``,
``NoData`` and ``ApiError`` are translated to 401 / 404 / 500 by the
exception handlers registered in ``src.main``.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query

from src.dependencies import Engine
from src.whoop.aggregation import AggregationEngine
from src.whoop.base import NoData

router = APIRouter(prefix="/whoop", tags=["whoop"])


def _found(record: dict | None, resource: str) -> dict:
    if record is None:
        raise NoData(resource)
    return record


def _limit(engine: AggregationEngine, requested: int | None, default: int) -> int:
    if requested is None:
        return default
    return min(requested, engine.config.history.max_limit)


def _listing(records: list[Any]) -> dict:
    return {"records": records, "count": len(records)}


# ---------- Latest ----------

@router.get("/sleep/latest")
async def latest_sleep(engine: Engine) -> dict:
    return _found(await engine.latest_sleep(), "sleep")


@router.get("/recovery/latest")
async def latest_recovery(engine: Engine) -> dict:
    return _found(await engine.latest_recovery(), "recovery")


@router.get("/cycle/latest")
async def latest_cycle(engine: Engine) -> dict:
    return _found(await engine.latest_cycle(), "cycle")


@router.get("/workout/latest")
async def latest_workout(engine: Engine) -> dict:
    return _found(await engine.latest_workout(), "workout")


# ---------- User ----------

@router.get("/profile")
async def profile(engine: Engine) -> dict:
    return await engine.user_profile()


@router.get("/body")
async def body(engine: Engine) -> dict:
    return await engine.body_measurement()


# ---------- History ----------

@router.get("/sleep/history")
async def sleep_history(engine: Engine, limit: int | None = Query(default=None, ge=1)) -> dict:
    return _listing(await engine.sleep_history(_limit(engine, limit, engine.config.history.sleep)))


@router.get("/recovery/history")
async def recovery_history(engine: Engine, limit: int | None = Query(default=None, ge=1)) -> dict:
    return _listing(
        await engine.recovery_history(_limit(engine, limit, engine.config.history.recovery))
    )


@router.get("/workout/history")
async def workout_history(engine: Engine, limit: int | None = Query(default=None, ge=1)) -> dict:
    return _listing(
        await engine.workout_history(_limit(engine, limit, engine.config.history.workout))
    )


# ---------- Aggregates ----------

@router.get("/summary/today")
async def summary_today(engine: Engine) -> dict:
    """Aggregated sleep + recovery snapshot; the assistant's main entry point."""
    return await engine.daily_summary()


@router.get("/report/weekly")
async def report_weekly(engine: Engine) -> dict:
    """Seven-day sleep and strain trends."""
    return await engine.weekly_report()
