from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

from .scoring import Strategy

logger = logging.getLogger(__name__)

ENV_PREFIX = "REFLECTION_GATE_"
PROJECT_DIR_NAME = ".reflection-gate"
DEFAULT_HOME = "~/.claude/reflection-gate"


class CircuitBreakerConfig(BaseModel):
    max_blocks: int = Field(default=3, ge=1)
    cooldown_seconds: int = Field(default=300, ge=0)


class GateConfig(BaseModel):
    auto_skip_enabled: bool = True
    auto_skip_line_threshold: int = Field(default=5, ge=0)
    skip_counts_as_dismissal: bool = False


class RetrievalConfig(BaseModel):
    strategy: Strategy = Strategy.MODERATE
    # None means the strategy's own cap.
    max_injections: Optional[int] = Field(default=None, ge=1)


class DecayConfig(BaseModel):
    passive_duration_days: int = Field(default=90, ge=1)
    immunity_hit_rate: float = Field(default=0.8, ge=0.0, le=1.0)
    check_interval_hours: int = Field(default=24, ge=0)
    warning_days: int = Field(default=7, ge=0)


class StatsConfig(BaseModel):
    rotate_after_days: Optional[int] = Field(default=None, ge=1)


class InsightConfig(BaseModel):
    """Thresholds for the insight rules."""

    low_hit_min_learnings: int = 10
    low_hit_threshold: float = 0.3
    rare_valuable_max_learnings: int = 5
    rare_valuable_hit_rate: float = 0.7
    write_gate_min_evaluations: int = 10
    too_strict_pass_rate: float = 0.5
    too_loose_pass_rate: float = 0.95
    too_loose_hit_rate: float = 0.3
    rubber_stamp_min_accepted: int = 10
    rubber_stamp_ratio: float = 0.9
    skip_miss_min: int = 1
    min_cross_pollination: int = 3
    stale_top_learning_days: int = 60
    stale_top_learning_hit_rate: float = 0.5


class Config(BaseModel):
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    gate: GateConfig = Field(default_factory=GateConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    decay: DecayConfig = Field(default_factory=DecayConfig)
    stats: StatsConfig = Field(default_factory=StatsConfig)
    insights: InsightConfig = Field(default_factory=InsightConfig)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Config":
        """Defaults overlaid with REFLECTION_GATE_* variables.

        An invalid value is logged and the default is kept.
        """
        environ = os.environ if environ is None else environ
        config = cls()
        for name, (section, field, parse) in _ENV_OVERRIDES.items():
            raw = environ.get(ENV_PREFIX + name)
            if raw is None or raw.strip() == "":
                continue
            target = getattr(config, section)
            try:
                value = parse(raw.strip())
                updated = target.model_validate({**target.model_dump(), field: value})
            except (ValueError, ValidationError):
                logger.warning("Ignoring invalid %s%s=%r", ENV_PREFIX, name, raw)
                continue
            setattr(config, section, updated)
        return config


def _parse_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(raw)


def _parse_optional_int(raw: str) -> int | None:
    if raw.lower() in ("none", "off", "default"):
        return None
    return int(raw)


_ENV_OVERRIDES: dict[str, tuple[str, str, Callable[[str], object]]] = {
    "MAX_BLOCKS": ("circuit_breaker", "max_blocks", int),
    "COOLDOWN_SECONDS": ("circuit_breaker", "cooldown_seconds", int),
    "AUTO_SKIP": ("gate", "auto_skip_enabled", _parse_bool),
    "AUTO_SKIP_THRESHOLD": ("gate", "auto_skip_line_threshold", int),
    "SKIP_COUNTS_AS_DISMISSAL": ("gate", "skip_counts_as_dismissal", _parse_bool),
    "STRATEGY": ("retrieval", "strategy", lambda raw: Strategy(raw.lower())),
    "MAX_INJECTIONS": ("retrieval", "max_injections", _parse_optional_int),
    "DECAY_DAYS": ("decay", "passive_duration_days", int),
    "IMMUNITY_HIT_RATE": ("decay", "immunity_hit_rate", float),
    "DECAY_INTERVAL_HOURS": ("decay", "check_interval_hours", int),
    "ROTATE_AFTER_DAYS": ("stats", "rotate_after_days", _parse_optional_int),
}


def home_dir(environ: Mapping[str, str] | None = None) -> Path:
    environ = os.environ if environ is None else environ
    return Path(os.path.expanduser(environ.get(ENV_PREFIX + "HOME", DEFAULT_HOME)))


def sessions_dir(home: Path) -> Path:
    return home / "sessions"


def personal_db_path(home: Path) -> Path:
    return home / "learnings.db"


def project_dir(cwd: str | Path) -> Path:
    return Path(cwd) / PROJECT_DIR_NAME


def stats_log_path(cwd: str | Path) -> Path:
    return project_dir(cwd) / "stats.log"


def stats_cache_path(cwd: str | Path) -> Path:
    return project_dir(cwd) / "stats-cache.json"


def project_db_path(cwd: str | Path) -> Path:
    return project_dir(cwd) / "learnings.db"
