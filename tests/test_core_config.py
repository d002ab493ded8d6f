"""Tests for triad/core/config.py — YAML cascade config loader."""

from pathlib import Path

import pytest
import yaml

from triad.core.config import (
    AppConfig,
    OrchestratorConfig,
    SelectorConfig,
    WorkerCommandsConfig,
    _deep_merge,
    load_config,
)
from triad.core.exceptions import ConfigError


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch):
    for name in ("TRIAD_STATE_DIR", "TRIAD_MAX_ITERATIONS", "TRIAD_SELECTOR_SEED"):
        monkeypatch.delenv(name, raising=False)


class TestOrchestratorConfig:
    def test_defaults(self):
        c = OrchestratorConfig()
        assert c.max_iterations == 5
        assert c.max_cycles is None
        assert c.limit is None
        assert c.escalate_on_no_change is True
        assert "ready_to_verify" in c.status_filter
        assert r"^__.*__$" in c.placeholder_key_patterns
        assert c.heartbeat_seconds == 30.0

    def test_rejects_zero_limit(self):
        with pytest.raises(ValueError):
            OrchestratorConfig(limit=0)

    def test_rejects_negative_heartbeat(self):
        with pytest.raises(ValueError):
            OrchestratorConfig(heartbeat_seconds=-1)


class TestSelectorConfig:
    def test_defaults(self):
        c = SelectorConfig()
        assert c.exploration_rate == 0.1
        assert c.degraded_quality_penalty == 0.5
        assert c.redeem_fraction == 0.2
        assert c.redeem_max_complexity == 4
        assert c.seed is None

    def test_rate_bounds(self):
        with pytest.raises(ValueError):
            SelectorConfig(exploration_rate=1.5)


class TestAppConfig:
    def test_all_defaults(self):
        c = AppConfig()
        assert isinstance(c.orchestrator, OrchestratorConfig)
        assert isinstance(c.selector, SelectorConfig)
        assert isinstance(c.workers, WorkerCommandsConfig)
        assert c.state.state_dir == ".triad"
        assert c.logging.level == "INFO"


class TestDeepMerge:
    def test_nested_override(self):
        base = {"a": {"b": 1, "c": 2}, "d": 3}
        merged = _deep_merge(base, {"a": {"c": 20}})
        assert merged == {"a": {"b": 1, "c": 20}, "d": 3}
        assert base["a"]["c"] == 2

    def test_non_dict_replaces(self):
        assert _deep_merge({"a": {"b": 1}}, {"a": 5}) == {"a": 5}


class TestLoadConfig:
    def test_repo_defaults(self, config_dir):
        c = load_config(config_dir=config_dir)
        assert c.orchestrator.max_iterations == 5
        assert c.workers.timeout_seconds == 1800
        assert c.orchestrator.heartbeat_seconds == 30.0

    def test_env_overlay(self, config_dir):
        c = load_config(config_dir=config_dir, env="test")
        assert c.orchestrator.max_iterations == 3
        assert c.selector.exploration_rate == 0.0
        assert c.selector.seed == 7
        # untouched keys come from default.yaml
        assert c.selector.redeem_max_complexity == 4

    def test_missing_dir_gives_defaults(self, tmp_path):
        c = load_config(config_dir=tmp_path / "nowhere")
        assert c == AppConfig()

    def test_env_var_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TRIAD_STATE_DIR", "/tmp/triad-state")
        monkeypatch.setenv("TRIAD_MAX_ITERATIONS", "9")
        monkeypatch.setenv("TRIAD_SELECTOR_SEED", "42")
        c = load_config(config_dir=tmp_path)
        assert c.state.state_dir == "/tmp/triad-state"
        assert c.orchestrator.max_iterations == 9
        assert c.selector.seed == 42

    def test_bad_env_integer(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TRIAD_MAX_ITERATIONS", "many")
        with pytest.raises(ConfigError, match="TRIAD_MAX_ITERATIONS"):
            load_config(config_dir=tmp_path)

    def test_invalid_yaml(self, tmp_path):
        (tmp_path / "default.yaml").write_text("orchestrator: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(config_dir=tmp_path)

    def test_invalid_value(self, tmp_path):
        (tmp_path / "default.yaml").write_text(yaml.safe_dump({"selector": {"exploration_rate": 2}}))
        with pytest.raises(ConfigError, match="Invalid configuration"):
            load_config(config_dir=tmp_path)

    def test_default_dir_has_yaml(self, config_dir: Path):
        assert (config_dir / "default.yaml").exists()
