from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

import yaml

from milestone_scheduler.core.errors import ConfigError


CONFIG_ENV = "MILESTONE_SCHEDULER_CONFIG"
WORKERS_ENV = "MILESTONE_SCHEDULER_WORKERS"


@dataclass(frozen=True)
class RiskWeights:
    criticality: float = 0.6
    slack: float = 0.4


@dataclass(frozen=True)
class SchedulerConfig:
    risk_weights: RiskWeights = field(default_factory=RiskWeights)
    delay_threshold: timedelta = timedelta(0)
    trend_days: int = 30
    cache_enabled: bool = True
    workers: int = 4
    # Percentage written by a batch status update to "in_progress".
    in_progress_percentage: float = 50.0


DEFAULT_CONFIG = SchedulerConfig()


def load_config_file(path: str | Path) -> dict[str, Any]:
    """Load config overrides from a YAML file.

    Format:
      risk_weights: {criticality: 0.7, slack: 0.3}
      delay_threshold_hours: 24
      trend_days: 14
      cache_enabled: true
      workers: 8
      in_progress_percentage: 50

    Unknown keys are rejected so typos do not silently fall back to defaults.
    """
    p = Path(path)
    if not p.exists():
        raise ConfigError(code="E_CONFIG_NOT_FOUND", message=f"config file not found: {p}", path=str(p))
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(code="E_CONFIG_PARSE", message=str(e), path=str(p)) from e
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(code="E_CONFIG_INVALID", message="config file must be a mapping", path=str(p))
    return raw


def merged_config(
    overrides: dict[str, Any] | None = None, base: SchedulerConfig = DEFAULT_CONFIG
) -> SchedulerConfig:
    """Return `base` with the given overrides applied."""
    if not overrides:
        return base

    allowed = {
        "risk_weights",
        "delay_threshold_hours",
        "trend_days",
        "cache_enabled",
        "workers",
        "in_progress_percentage",
    }
    unknown = sorted(set(overrides) - allowed)
    if unknown:
        raise ConfigError(code="E_CONFIG_UNKNOWN_KEY", message=f"unknown config keys: {unknown}")

    cfg = base
    if "risk_weights" in overrides:
        rw = overrides["risk_weights"]
        if not isinstance(rw, dict) or not set(rw) <= {"criticality", "slack"}:
            raise ConfigError(
                code="E_CONFIG_INVALID",
                message="risk_weights must be a mapping with keys criticality/slack",
                path="risk_weights",
            )
        weights = replace(cfg.risk_weights, **{k: _number(v, f"risk_weights.{k}") for k, v in rw.items()})
        if weights.criticality < 0 or weights.slack < 0:
            raise ConfigError(code="E_CONFIG_INVALID", message="risk weights must be >= 0", path="risk_weights")
        cfg = replace(cfg, risk_weights=weights)

    if "delay_threshold_hours" in overrides:
        hours = _number(overrides["delay_threshold_hours"], "delay_threshold_hours")
        if hours < 0:
            raise ConfigError(
                code="E_CONFIG_INVALID", message="delay_threshold_hours must be >= 0", path="delay_threshold_hours"
            )
        cfg = replace(cfg, delay_threshold=timedelta(hours=hours))

    if "trend_days" in overrides:
        cfg = replace(cfg, trend_days=_positive_int(overrides["trend_days"], "trend_days"))

    if "workers" in overrides:
        cfg = replace(cfg, workers=_positive_int(overrides["workers"], "workers"))

    if "cache_enabled" in overrides:
        v = overrides["cache_enabled"]
        if not isinstance(v, bool):
            raise ConfigError(code="E_CONFIG_INVALID", message="cache_enabled must be a boolean", path="cache_enabled")
        cfg = replace(cfg, cache_enabled=v)

    if "in_progress_percentage" in overrides:
        pct = _number(overrides["in_progress_percentage"], "in_progress_percentage")
        if not 0 < pct < 100:
            raise ConfigError(
                code="E_CONFIG_INVALID",
                message="in_progress_percentage must be strictly between 0 and 100",
                path="in_progress_percentage",
            )
        cfg = replace(cfg, in_progress_percentage=pct)

    return cfg


def load_config(path: Optional[str] = None) -> SchedulerConfig:
    """Defaults, then the YAML file (explicit path or $MILESTONE_SCHEDULER_CONFIG), then env."""
    config_path = path or os.getenv(CONFIG_ENV)
    cfg = merged_config(load_config_file(config_path)) if config_path else DEFAULT_CONFIG

    workers = os.getenv(WORKERS_ENV)
    if workers:
        try:
            cfg = replace(cfg, workers=_positive_int(int(workers), WORKERS_ENV))
        except ValueError as e:
            raise ConfigError(code="E_CONFIG_INVALID", message=f"{WORKERS_ENV} must be an integer", path=WORKERS_ENV) from e
    return cfg


def _number(v: Any, path: str) -> float:
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        raise ConfigError(code="E_CONFIG_INVALID", message=f"{path} must be a number", path=path)
    return float(v)


def _positive_int(v: Any, path: str) -> int:
    if isinstance(v, bool) or not isinstance(v, int) or v <= 0:
        raise ConfigError(code="E_CONFIG_INVALID", message=f"{path} must be a positive integer", path=path)
    return v
