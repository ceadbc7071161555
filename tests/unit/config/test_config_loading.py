"""Tests for configuration management."""

from pathlib import Path

import pytest
import yaml

from colony.agents.base import AgentSettings
from colony.budget.controller import BudgetPolicy
from colony.config import (
    ENV_VARS,
    Config,
    ConfigError,
    load_config,
    load_config_from_env,
    load_config_from_file,
    section_dict,
    validate_config,
)
from colony.core.orchestrator import OrchestratorConfig


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def write_yaml(tmp_path: Path, data) -> Path:
    path = tmp_path / "colony.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


class TestConfig:
    """Test configuration defaults and validation."""

    def test_default_config(self):
        """Test default configuration values."""
        config = Config()

        assert isinstance(config.budget, BudgetPolicy)
        assert isinstance(config.agents, AgentSettings)
        assert isinstance(config.orchestrator, OrchestratorConfig)
        assert config.budget.critical_reserve == 500
        assert config.market.stale_timeout == 50
        assert config.cache.slow_ttl == 500
        assert config.logging.level == "INFO"
        assert config.metrics.enabled is False

    def test_config_validation_success(self):
        """Test successful configuration validation."""
        validate_config(Config())

    def test_reserves_must_be_ordered(self):
        """Test that thresholds out of order are rejected."""
        config = Config()
        config.budget.low_reserve = 200

        with pytest.raises(ConfigError, match="critical < low < medium < high"):
            validate_config(config)

    def test_utilization_hysteresis_band(self):
        config = Config()
        config.budget.exit_utilization = 0.95

        with pytest.raises(ConfigError, match="exit_utilization"):
            validate_config(config)

    @pytest.mark.parametrize(
        "name", ["hygiene_interval", "hygiene_batch_size", "stats_interval", "error_ring_size"]
    )
    def test_orchestrator_intervals_positive(self, name):
        """Test orchestrator intervals must be positive."""
        config = Config()
        setattr(config.orchestrator, name, 0)

        with pytest.raises(ConfigError, match=f"orchestrator.{name} must be positive"):
            validate_config(config)

    def test_refill_threshold_range(self):
        config = Config()
        config.agents.refill_threshold = 1.5

        with pytest.raises(ConfigError, match="refill_threshold"):
            validate_config(config)

    def test_invalid_metrics_port(self):
        config = Config()
        config.metrics.port = 70000

        with pytest.raises(ConfigError, match="metrics.port"):
            validate_config(config)

    def test_section_dict(self):
        """Test plain-dict view includes policy sections."""
        data = section_dict(Config())

        assert data["budget"]["window"] == 10
        assert data["market"]["wait_cap"] == 60.0
        assert data["orchestrator"]["hygiene_interval"] == 20
        assert data["cache"]["preserve_facts"] == ["topology.", "idle_position", "depot."]
        yaml.safe_dump(data)


class TestConfigLoading:
    """Test configuration loading from various sources."""

    def test_load_config_from_file(self, tmp_path):
        """Test loading configuration from YAML file."""
        path = write_yaml(
            tmp_path,
            {
                "logging": {"level": "DEBUG", "format": "text"},
                "budget": {"window": 5, "high_reserve": 8000},
                "market": {"stale_timeout": 80},
            },
        )

        config = load_config_from_file(path)

        assert config.logging.level == "DEBUG"
        assert config.logging.format == "text"
        assert config.budget.window == 5
        assert config.budget.high_reserve == 8000
        assert config.budget.low_reserve == 1000
        assert config.market.stale_timeout == 80

    def test_load_config_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config_from_file(tmp_path / "missing.yaml")

    def test_load_config_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("budget: [unclosed")

        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config_from_file(path)

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        assert load_config_from_file(path).budget.window == 10

    def test_non_mapping_file(self, tmp_path):
        path = write_yaml(tmp_path, ["budget"])

        with pytest.raises(ConfigError, match="mapping"):
            load_config_from_file(path)

    def test_unknown_policy_key(self, tmp_path):
        """Test unknown keys in a policy section are rejected."""
        path = write_yaml(tmp_path, {"budget": {"windw": 5}})

        with pytest.raises(ConfigError, match="validation failed"):
            load_config_from_file(path)

    def test_unknown_section(self, tmp_path):
        path = write_yaml(tmp_path, {"scheduler": {}})

        with pytest.raises(ConfigError):
            load_config_from_file(path)

    def test_load_config_from_env(self, monkeypatch):
        """Test loading configuration from environment variables."""
        monkeypatch.setenv("COLONY_LOG_LEVEL", "debug")
        monkeypatch.setenv("COLONY_METRICS_ENABLED", "yes")
        monkeypatch.setenv("COLONY_METRICS_PORT", "9100")
        monkeypatch.setenv("COLONY_BUDGET_WINDOW", "4")
        monkeypatch.setenv("COLONY_SEARCH_COOLDOWN", "8")

        config = load_config_from_env()

        assert config.logging.level == "DEBUG"
        assert config.metrics.enabled is True
        assert config.metrics.port == 9100
        assert config.budget.window == 4
        assert config.agents.search_cooldown == 8

    def test_invalid_env_value(self, monkeypatch):
        monkeypatch.setenv("COLONY_METRICS_PORT", "not-a-port")

        with pytest.raises(ConfigError, match="COLONY_METRICS_PORT"):
            load_config_from_env()

    def test_empty_env_value_ignored(self, monkeypatch):
        monkeypatch.setenv("COLONY_BUDGET_WINDOW", "")

        assert load_config_from_env().budget.window == 10

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        """Test environment variables win over the file, the file over defaults."""
        path = write_yaml(
            tmp_path,
            {"budget": {"window": 5, "critical_reserve": 400}, "logging": {"level": "WARNING"}},
        )
        monkeypatch.setenv("COLONY_BUDGET_WINDOW", "7")

        config = load_config(path)

        assert config.budget.window == 7
        assert config.budget.critical_reserve == 400
        assert config.logging.level == "WARNING"
        assert config.budget.medium_reserve == 3000

    def test_load_config_without_file(self):
        config = load_config()
        assert config.orchestrator.hygiene_batch_size == 10
