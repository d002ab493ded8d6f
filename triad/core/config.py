"""Configuration loader for Triad.

Loads config from a YAML cascade: config/default.yaml is always loaded,
then environment-specific overrides, then environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from triad.core.exceptions import ConfigError


# ---------------------------------------------------------------------------
# Config schema
# ---------------------------------------------------------------------------

class OrchestratorConfig(BaseModel):
    max_iterations: Optional[int] = 5
    max_cycles: Optional[int] = None
    limit: Optional[int] = None
    status_filter: list[str] = Field(
        default_factory=lambda: ["not_started", "in_progress", "ready_to_review", "ready_to_verify"]
    )
    escalate_on_no_change: bool = True
    rate_agents: bool = False
    dry_run: bool = False
    placeholder_key_patterns: list[str] = Field(
        default_factory=lambda: [r"^__.*__$", r"^run[-_]marker", r"^<.*>$"]
    )
    produce_capabilities: list[str] = Field(default_factory=lambda: ["code_write"])
    review_capabilities: list[str] = Field(default_factory=lambda: ["code_review"])
    verify_capabilities: list[str] = Field(default_factory=lambda: ["qa_interpretation"])
    heartbeat_seconds: float = Field(default=30.0, ge=0.0)  # 0 disables phase heartbeats

    @field_validator("max_iterations", "max_cycles", "limit")
    @classmethod
    def _positive_or_none(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value < 1:
            raise ValueError("must be >= 1 when set")
        return value


class SelectorConfig(BaseModel):
    exploration_rate: float = Field(default=0.1, ge=0.0, le=1.0)
    degraded_quality_penalty: float = 0.5
    redeem_fraction: float = Field(default=0.2, gt=0.0, le=1.0)
    redeem_max_complexity: int = 4
    quality_band: float = 1.0
    default_complexity: int = 5
    seed: Optional[int] = None


class StateConfig(BaseModel):
    state_dir: str = ".triad"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class WorkerCommandsConfig(BaseModel):
    """Shell command templates used by the CLI phase workers."""
    produce: Optional[str] = None
    review: Optional[str] = None
    verify: Optional[str] = None
    timeout_seconds: int = 1800


class AppConfig(BaseModel):
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    selector: SelectorConfig = Field(default_factory=SelectorConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    workers: WorkerCommandsConfig = Field(default_factory=WorkerCommandsConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base, returning a new dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with open(path) as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    return data if isinstance(data, dict) else {}


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    state_dir = os.getenv("TRIAD_STATE_DIR")
    if state_dir:
        overrides.setdefault("state", {})["state_dir"] = state_dir

    max_iterations = os.getenv("TRIAD_MAX_ITERATIONS")
    if max_iterations:
        try:
            overrides.setdefault("orchestrator", {})["max_iterations"] = int(max_iterations)
        except ValueError as exc:
            raise ConfigError(f"TRIAD_MAX_ITERATIONS must be an integer, got {max_iterations!r}") from exc

    seed = os.getenv("TRIAD_SELECTOR_SEED")
    if seed:
        try:
            overrides.setdefault("selector", {})["seed"] = int(seed)
        except ValueError as exc:
            raise ConfigError(f"TRIAD_SELECTOR_SEED must be an integer, got {seed!r}") from exc
    return overrides


def default_config_dir() -> Path:
    return Path(__file__).parent.parent.parent / "config"


def load_config(
    config_dir: Optional[Path] = None,
    env: Optional[str] = None,
) -> AppConfig:
    """Load application config from YAML cascade.

    Order: default.yaml -> {env}.yaml -> env vars (TRIAD_STATE_DIR, etc.)
    """
    if config_dir is None:
        config_dir = default_config_dir()

    merged = _load_yaml(config_dir / "default.yaml")

    if env:
        overlay = _load_yaml(config_dir / f"{env}.yaml")
        merged = _deep_merge(merged, overlay)

    merged = _deep_merge(merged, _env_overrides())

    try:
        return AppConfig(**merged)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
