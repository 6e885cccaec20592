"""WHOOP aggregation engine.

Turns raw WHOOP v2 resources into the simplified payloads the assistant
consumes.  Most operations are a single authenticated GET.  Three combine
several calls:

    latest_recovery   — latest cycle → that cycle's recovery (sequential)
    recovery_history  — N cycles → each cycle's recovery (concurrent, best effort)
    daily_summary     — latest sleep + latest recovery (concurrent, best effort)
    weekly_report     — sleep history + cycle history (concurrent, best effort)

Best-effort sub-fetches are captured as ``Outcome`` values.  ``NoData`` and
``ApiError`` degrade a subsection; ``AuthRequired`` always propagates, since
no subsection can succeed without a credential.

WHOOP reports durations in milliseconds.  Hours are rendered as one-decimal
strings, minutes as integers.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Awaitable, Callable, Protocol

from src.whoop.base import ApiError, NoData, Outcome
from src.whoop.config_loader import InsightsConfig, get_insights_config

logger = logging.getLogger("whoop_bridge.aggregation")

_MS_PER_HOUR = 3_600_000
_MS_PER_MINUTE = 60_000


class Fetcher(Protocol):
    async def get(self, endpoint: str, params: dict[str, Any] | None = None) -> Any: ...


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


class AggregationEngine:
    """One method per logical WHOOP resource the bridge exposes.

    Args:
        client: Authenticated fetcher (``WhoopClient`` in production).
        config: Insight thresholds; the bundled YAML config by default.
        today:  Returns the current date for the daily summary (UTC by default).
    """

    def __init__(
        self,
        client: Fetcher,
        config: InsightsConfig | None = None,
        today: Callable[[], date] = _utc_today,
    ) -> None:
        self._client = client
        self._config = config or get_insights_config()
        self._today = today

    @property
    def config(self) -> InsightsConfig:
        return self._config

    # ------------------------------------------------------------------
    # Single-resource lookups
    # ------------------------------------------------------------------

    async def latest_sleep(self) -> dict | None:
        return await self._latest("/activity/sleep")

    async def latest_cycle(self) -> dict | None:
        return await self._latest("/cycle")

    async def latest_workout(self) -> dict | None:
        return await self._latest("/activity/workout")

    async def sleep_history(self, limit: int | None = None) -> list[dict]:
        return await self._list("/activity/sleep", limit or self._config.history.sleep)

    async def cycle_history(self, limit: int | None = None) -> list[dict]:
        return await self._list("/cycle", limit or self._config.history.cycle)

    async def workout_history(self, limit: int | None = None) -> list[dict]:
        return await self._list("/activity/workout", limit or self._config.history.workout)

    async def user_profile(self) -> dict:
        return await self._client.get("/user/profile/basic")

    async def body_measurement(self) -> dict:
        return await self._client.get("/user/measurement/body")

    # ------------------------------------------------------------------
    # Recovery (keyed by cycle)
    # ------------------------------------------------------------------

    async def latest_recovery(self) -> dict | None:
        """Recovery for the most recent cycle, or None if it has none yet.

        The current cycle is often still open and unscored, so a 404 on its
        recovery is normal and not an error.

        Raises:
            ApiError: If the latest cycle has no usable id, or the lookup fails
                      with anything other than 404.
        """
        cycle = await self.latest_cycle()
        if cycle is None:
            return None
        return await self._recovery_for(_cycle_id(cycle))

    async def recovery_history(self, limit: int | None = None) -> list[dict]:
        """Recoveries for the ``limit`` most recent cycles, newest first.

        Cycles without a recovery (or whose lookup fails) are skipped.  Each
        entry is the recovery payload plus ``cycle_id`` and ``date`` (cycle start).
        """
        cycles = await self.cycle_history(limit or self._config.history.recovery)
        outcomes = await asyncio.gather(
            *(self._attempt("recovery", self._recovery_for_cycle(c)) for c in cycles)
        )

        recoveries: list[dict] = []
        for cycle, outcome in zip(cycles, outcomes):
            if not outcome.is_ok:
                logger.debug("Skipping cycle %s: %s", cycle.get("id"), outcome.kind.value)
                continue
            recoveries.append({"cycle_id": cycle.get("id"), "date": cycle.get("start"), **outcome.value})
        return recoveries

    async def _recovery_for_cycle(self, cycle: dict) -> dict | None:
        return await self._recovery_for(_cycle_id(cycle))

    async def _recovery_for(self, cycle_id: int) -> dict | None:
        try:
            return await self._client.get(f"/cycle/{cycle_id}/recovery")
        except ApiError as exc:
            if exc.status == 404:
                return None
            raise

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    async def daily_summary(self) -> dict:
        """Today's sleep + recovery snapshot with flags and a training hint."""
        sleep_outcome, recovery_outcome = await asyncio.gather(
            self._attempt("sleep", self.latest_sleep()),
            self._attempt("recovery", self.latest_recovery()),
        )
        sleep = sleep_outcome.value_or(None)
        recovery = recovery_outcome.value_or(None)

        recovery_score = _score(recovery).get("recovery_score") if recovery else None

        return {
            "date": self._today().isoformat(),
            "sleep": _summarize_sleep(sleep) if sleep else None,
            "recovery": _summarize_recovery(recovery) if recovery else None,
            "flags": self.flags(sleep, recovery),
            "training_hint": self.training_hint(recovery_score),
        }

    async def weekly_report(self) -> dict:
        """Trend report over the most recent week of sleeps and cycles."""
        days = self._config.period_days
        recent = self._config.recent_count
        sleep_outcome, cycle_outcome = await asyncio.gather(
            self._attempt("sleep history", self.sleep_history(days)),
            self._attempt("cycle history", self.cycle_history(days)),
        )
        sleeps: list[dict] = sleep_outcome.value_or([])
        cycles: list[dict] = cycle_outcome.value_or([])

        sleep_scores = [
            s for s in (_score(r).get("sleep_performance_percentage") for r in sleeps) if s is not None
        ]
        strains = [s for s in (_score(c).get("strain") for c in cycles) if s is not None]

        return {
            "period": f"{days} days",
            "sleep": {
                "average_score": _round_half_up(sum(sleep_scores) / len(sleep_scores)) if sleep_scores else None,
                "total_records": len(sleeps),
                "recent": [
                    {
                        "date": s.get("start"),
                        "score": _score(s).get("sleep_performance_percentage"),
                        "duration_hours": _hours(_stages(s).get("total_in_bed_time_milli")),
                    }
                    for s in sleeps[:recent]
                ],
            },
            "strain": {
                "average": _one_decimal(sum(strains) / len(strains)) if strains else None,
                "recent": [
                    {
                        "date": c.get("start"),
                        "strain": _one_decimal(_score(c).get("strain")),
                    }
                    for c in cycles[:recent]
                ],
            },
        }

    # ------------------------------------------------------------------
    # Derived metrics
    # ------------------------------------------------------------------

    def flags(self, sleep: dict | None, recovery: dict | None) -> list[str]:
        """Flags whose metric is present and below its threshold, in config order."""
        metrics: dict[str, float] = {}
        if sleep:
            stages = _stages(sleep)
            in_bed = stages.get("total_in_bed_time_milli")
            slow_wave = stages.get("total_slow_wave_sleep_time_milli")
            if in_bed is not None:
                metrics["time_in_bed_hours"] = in_bed / _MS_PER_HOUR
            if slow_wave is not None:
                metrics["slow_wave_sleep_minutes"] = slow_wave / _MS_PER_MINUTE
        if recovery:
            score = _score(recovery)
            if score.get("hrv_rmssd_milli") is not None:
                metrics["hrv_rmssd_ms"] = score["hrv_rmssd_milli"]
            if score.get("recovery_score") is not None:
                metrics["recovery_score"] = score["recovery_score"]

        return [
            rule.name
            for rule in self._config.flags
            if rule.metric in metrics and metrics[rule.metric] < rule.below
        ]

    def training_hint(self, recovery_score: float | None) -> dict[str, str]:
        return self._config.hint_for(recovery_score).as_hint()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _latest(self, endpoint: str) -> dict | None:
        records = await self._list(endpoint, 1)
        return records[0] if records else None

    async def _list(self, endpoint: str, limit: int) -> list[dict]:
        payload = await self._client.get(endpoint, params={"limit": limit})
        return _records(payload)

    async def _attempt(self, resource: str, fetch: Awaitable[Any]) -> Outcome:
        """Run one best-effort sub-fetch and tag its result."""
        try:
            value = await fetch
        except NoData:
            return Outcome.missing()
        except ApiError as exc:
            logger.warning("Degrading %s: %s", resource, exc)
            return Outcome.failed(str(exc))
        if value is None:
            return Outcome.missing()
        return Outcome.ok(value)


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


def _records(payload: Any) -> list[dict]:
    if isinstance(payload, dict):
        return list(payload.get("records") or [])
    return []


def _score(record: dict | None) -> dict:
    return (record or {}).get("score") or {}


def _stages(sleep: dict) -> dict:
    return _score(sleep).get("stage_summary") or {}


def _cycle_id(cycle: dict) -> int:
    """Return the cycle's numeric id.

    WHOOP cycle ids are integers.  Anything else would turn the recovery
    lookup into a 404 that looks like "no recovery yet", so it is rejected.
    """
    raw = cycle.get("id")
    if isinstance(raw, bool):
        raw = None
    if isinstance(raw, int) and raw >= 0:
        return raw
    if isinstance(raw, str) and raw.isdigit():
        return int(raw)
    raise ApiError(None, f"Malformed cycle id: {raw!r}")


def _summarize_sleep(sleep: dict) -> dict:
    stages = _stages(sleep)
    return {
        "start": sleep.get("start"),
        "end": sleep.get("end"),
        "score": _score(sleep).get("sleep_performance_percentage"),
        "duration_hours": _hours(stages.get("total_in_bed_time_milli")),
        "deep_sleep_mins": _minutes(stages.get("total_slow_wave_sleep_time_milli")),
        "rem_sleep_mins": _minutes(stages.get("total_rem_sleep_time_milli")),
    }


def _summarize_recovery(recovery: dict) -> dict:
    score = _score(recovery)
    return {
        "score": score.get("recovery_score"),
        "hrv": score.get("hrv_rmssd_milli"),
        "rhr": score.get("resting_heart_rate"),
        "timestamp": recovery.get("created_at"),
    }


def _round_half_up(value: float) -> int:
    return int(Decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _one_decimal(value: float | None) -> str | None:
    if value is None:
        return None
    return str(Decimal(value).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def _hours(ms: float | None) -> str | None:
    return _one_decimal(ms / _MS_PER_HOUR) if ms is not None else None


def _minutes(ms: float | None) -> int | None:
    return _round_half_up(ms / _MS_PER_MINUTE) if ms is not None else None
