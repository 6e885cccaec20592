"""Load, validate, and hot-reload the insight thresholds.

The thresholds live in ``insights_config.yaml`` alongside this module.  They
are loaded once and cached.  Call ``reload_insights_config()`` to re-read
from disk; no restart required.

Usage::

    from src.whoop.config_loader import get_insights_config

    config = get_insights_config()
    config.flag_threshold("low_recovery")   # 34.0
    config.hint_for(72)                     # TrainingBand(intensity='high', ...)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("whoop_bridge.config")

_CONFIG_PATH = Path(__file__).parent / "insights_config.yaml"

# Metrics a flag may be keyed on
_FLAG_METRICS = {
    "time_in_bed_hours",
    "slow_wave_sleep_minutes",
    "hrv_rmssd_ms",
    "recovery_score",
}


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class FlagRule:
    """Emit ``name`` when ``metric`` is strictly below ``below``."""

    name: str
    metric: str
    below: float


@dataclass
class TrainingBand:
    """One training-hint band; applies when score >= min_score."""

    intensity: str
    focus: str
    min_score: float | None = None

    def as_hint(self) -> dict[str, str]:
        return {"intensity": self.intensity, "focus": self.focus}


@dataclass
class HistoryLimits:
    sleep: int
    cycle: int
    recovery: int
    workout: int
    max_limit: int


@dataclass
class InsightsConfig:
    """Complete, validated insight configuration.

    Attributes:
        version:       Config schema version string.
        flags:         Flag rules in emission order.
        bands:         Training bands sorted by min_score descending.
        unknown_hint:  Hint returned when no recovery score is available.
        period_days:   Window of the weekly report.
        recent_count:  How many recent records the weekly report lists.
        history:       Default and maximum history limits.
    """

    version: str
    flags: list[FlagRule]
    bands: list[TrainingBand]
    unknown_hint: TrainingBand
    period_days: int
    recent_count: int
    history: HistoryLimits
    _raw: dict = field(default_factory=dict, repr=False)

    def flag_threshold(self, name: str) -> float | None:
        for rule in self.flags:
            if rule.name == name:
                return rule.below
        return None

    def hint_for(self, score: float | None) -> TrainingBand:
        """Return the training band for a recovery score (None → unknown)."""
        if score is None:
            return self.unknown_hint
        for band in self.bands:
            if score >= (band.min_score or 0):
                return band
        return self.bands[-1] if self.bands else self.unknown_hint


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when insights_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        raise FileNotFoundError(f"Insights config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> InsightsConfig:
    """Validate the raw YAML dict and construct an InsightsConfig.

    Raises:
        ConfigValidationError: If required fields are missing or invalid.
    """
    errors: list[str] = []

    def _number(value: Any, where: str) -> float | None:
        try:
            return float(value)
        except (TypeError, ValueError):
            errors.append(f"{where} must be a number, got {value!r}")
            return None

    def _integer(value: Any, where: str) -> int | None:
        if isinstance(value, bool) or not isinstance(value, (int, str)):
            errors.append(f"{where} must be an integer, got {value!r}")
            return None
        try:
            return int(value)
        except ValueError:
            errors.append(f"{where} must be an integer, got {value!r}")
            return None

    version = str(raw.get("version", "1.0"))

    # ── Flags ──
    flags_raw = raw.get("flags") or {}
    if not isinstance(flags_raw, dict) or not flags_raw:
        errors.append("'flags' section is missing or empty")
        flags_raw = {}
    flags: list[FlagRule] = []
    for name, cfg in flags_raw.items():
        if not isinstance(cfg, dict):
            errors.append(f"flags.{name} must be a mapping")
            continue
        metric = cfg.get("metric")
        if metric not in _FLAG_METRICS:
            errors.append(
                f"flags.{name}.metric {metric!r} is not one of {sorted(_FLAG_METRICS)}"
            )
            continue
        below = _number(cfg.get("below"), f"flags.{name}.below")
        if below is not None:
            flags.append(FlagRule(name=name, metric=metric, below=below))

    # ── Training hint ──
    th_raw = raw.get("training_hint") or {}
    bands: list[TrainingBand] = []
    for i, band in enumerate(th_raw.get("bands") or []):
        if not isinstance(band, dict) or "intensity" not in band or "focus" not in band:
            errors.append(f"training_hint.bands[{i}] needs intensity and focus")
            continue
        min_score = _number(band.get("min_score", 0), f"training_hint.bands[{i}].min_score")
        if min_score is None:
            continue
        if not (0 <= min_score <= 100):
            errors.append(f"training_hint.bands[{i}].min_score = {min_score} is out of range [0, 100]")
        bands.append(
            TrainingBand(intensity=str(band["intensity"]), focus=str(band["focus"]), min_score=min_score)
        )
    if not bands:
        errors.append("'training_hint.bands' is missing or empty")
    bands.sort(key=lambda b: b.min_score or 0, reverse=True)

    unknown_raw = th_raw.get("unknown") or {}
    unknown_hint = TrainingBand(
        intensity=str(unknown_raw.get("intensity", "unknown")),
        focus=str(unknown_raw.get("focus", "rest")),
    )

    # ── History limits ──
    hl_raw = raw.get("history") or {}
    limits: dict[str, int] = {}
    for name, default in (
        ("sleep", 7), ("cycle", 7), ("recovery", 7), ("workout", 10), ("max_limit", 25)
    ):
        key = name if name == "max_limit" else f"{name}_limit"
        value = _integer(hl_raw.get(key, default), f"history.{key}")
        limits[name] = default if value is None else value
    history = HistoryLimits(**limits)
    for name in ("sleep", "cycle", "recovery", "workout"):
        value = getattr(history, name)
        if not (1 <= value <= history.max_limit):
            errors.append(f"history.{name}_limit = {value} is out of range [1, {history.max_limit}]")

    # ── Weekly report ──
    wr_raw = raw.get("weekly_report") or {}
    period_days = _integer(wr_raw.get("period_days", 7), "weekly_report.period_days")
    recent_count = _integer(wr_raw.get("recent_count", 3), "weekly_report.recent_count")
    if period_days is not None and not (1 <= period_days <= history.max_limit):
        errors.append(
            f"weekly_report.period_days = {period_days} is out of range [1, {history.max_limit}]"
        )
    if recent_count is not None and recent_count < 0:
        errors.append("weekly_report.recent_count must be >= 0")

    if errors:
        raise ConfigValidationError(
            f"insights_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return InsightsConfig(
        version=version,
        flags=flags,
        bands=bands,
        unknown_hint=unknown_hint,
        period_days=period_days,
        recent_count=recent_count,
        history=history,
        _raw=raw,
    )


def load_insights_config(path: Path | None = None) -> InsightsConfig:
    """Load and validate the insights config from disk.

    Args:
        path: Override path to YAML. Uses the bundled insights_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    config = _validate_and_build(_load_yaml(target))
    logger.info("Loaded insights config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: InsightsConfig | None = None
_config_lock = threading.Lock()


def get_insights_config() -> InsightsConfig:
    """Return the global InsightsConfig singleton, loading it on first call."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_insights_config()
    return _config


def reload_insights_config(path: Path | None = None) -> InsightsConfig:
    """Reload the config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_insights_config(path)
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded insights config: %s → %s", old_version, new_config.version)
    return new_config
