"""Core configuration management for colony.

Configuration is a pydantic model whose scheduling sections are the policy
dataclasses the components consume directly, so a loaded config can be
handed to the orchestrator without translation.
"""

import os
from collections.abc import Callable
from dataclasses import fields, is_dataclass
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from colony.agents.base import AgentSettings
from colony.budget.controller import BudgetPolicy
from colony.core.orchestrator import OrchestratorConfig
from colony.market.requests import MarketPolicy


class ConfigError(Exception):
    """Configuration-related errors."""

    pass


class CacheConfig(BaseModel):
    """TTLs per fact class and cache bounds."""

    default_ttl: float = Field(10, description="TTL for facts stored without one")
    fast_ttl: float = Field(10, description="Sites, repair targets, ranked targets")
    slow_ttl: float = Field(500, description="Zone topology: nodes, controller, depots")
    max_entries: int = Field(10_000, description="Entries kept before LRU eviction")
    preserve_facts: list[str] = Field(
        default_factory=lambda: ["topology.", "idle_position", "depot."],
        description="Fact name prefixes kept by the periodic cache clear",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["json", "text"] = "json"


class MetricsConfig(BaseModel):
    """Metrics configuration."""

    enabled: bool = False
    port: int = 8000
    tracing: bool = False


_SECTIONS: dict[str, type] = {
    "budget": BudgetPolicy,
    "market": MarketPolicy,
    "agents": AgentSettings,
    "orchestrator": OrchestratorConfig,
}


class Config(BaseModel):
    """Main configuration class for colony."""

    budget: BudgetPolicy = Field(default_factory=BudgetPolicy)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    market: MarketPolicy = Field(default_factory=MarketPolicy)
    agents: AgentSettings = Field(default_factory=AgentSettings)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="forbid")

    @field_validator("budget", "market", "agents", "orchestrator", mode="before")
    @classmethod
    def validate_policy_section(cls, v, info):
        """Build policy dataclasses from mappings, rejecting unknown keys."""
        if isinstance(v, dict):
            section = _SECTIONS[info.field_name]
            try:
                return section(**v)
            except TypeError as e:
                raise ValueError(f"invalid {info.field_name} section: {e}") from e
        return v


def section_dict(config: Config) -> dict[str, Any]:
    """Plain-dict view of a config, dataclass sections included."""
    data = config.model_dump(mode="json")
    for name in _SECTIONS:
        value = getattr(config, name)
        if is_dataclass(value) and not isinstance(data.get(name), dict):
            data[name] = {f.name: getattr(value, f.name) for f in fields(value)}
    return data


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(config_path: Path) -> dict[str, Any]:
    try:
        with open(config_path) as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Configuration file not found: {config_path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in configuration file: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file must contain a mapping: {config_path}")
    return data


def load_config_from_file(config_path: Path) -> Config:
    """Load configuration from YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        Loaded configuration

    Raises:
        ConfigError: If configuration is invalid or file cannot be read
    """
    data = _read_yaml(config_path)
    try:
        return Config(**data)
    except ValidationError as e:
        raise ConfigError(f"Configuration validation failed: {e}") from e


def _to_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes", "on")


# COLONY_* variable -> (section, field, parser)
ENV_VARS: dict[str, tuple[str, str, Callable[[str], Any]]] = {
    "COLONY_LOG_LEVEL": ("logging", "level", str.upper),
    "COLONY_LOG_FORMAT": ("logging", "format", str.lower),
    "COLONY_METRICS_ENABLED": ("metrics", "enabled", _to_bool),
    "COLONY_METRICS_PORT": ("metrics", "port", int),
    "COLONY_TRACING": ("metrics", "tracing", _to_bool),
    "COLONY_BUDGET_WINDOW": ("budget", "window", int),
    "COLONY_BUDGET_CRITICAL_RESERVE": ("budget", "critical_reserve", float),
    "COLONY_BUDGET_LOW_RESERVE": ("budget", "low_reserve", float),
    "COLONY_BUDGET_MEDIUM_RESERVE": ("budget", "medium_reserve", float),
    "COLONY_BUDGET_HIGH_RESERVE": ("budget", "high_reserve", float),
    "COLONY_BUDGET_RECOVERY_RESERVE": ("budget", "recovery_reserve", float),
    "COLONY_CACHE_FAST_TTL": ("cache", "fast_ttl", float),
    "COLONY_CACHE_SLOW_TTL": ("cache", "slow_ttl", float),
    "COLONY_MARKET_STALE_TIMEOUT": ("market", "stale_timeout", int),
    "COLONY_MARKET_WAIT_CAP": ("market", "wait_cap", float),
    "COLONY_SEARCH_COOLDOWN": ("agents", "search_cooldown", int),
    "COLONY_HYGIENE_INTERVAL": ("orchestrator", "hygiene_interval", int),
    "COLONY_COMPUTE_LIMIT": ("orchestrator", "compute_limit", float),
}


def _env_overrides() -> dict[str, Any]:
    data: dict[str, Any] = {}
    for name, (section, field_name, parse) in ENV_VARS.items():
        raw = os.getenv(name)
        if raw is None or raw == "":
            continue
        try:
            value = parse(raw)
        except ValueError as e:
            raise ConfigError(f"Invalid {name}: {raw}") from e
        data.setdefault(section, {})[field_name] = value
    return data


def load_config_from_env() -> Config:
    """Load configuration from COLONY_* environment variables over defaults.

    Returns:
        Configuration loaded from environment variables
    """
    try:
        return Config(**_merge(section_dict(Config()), _env_overrides()))
    except ValidationError as e:
        raise ConfigError(f"Environment configuration validation failed: {e}") from e


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from file and environment variables.

    Configuration is loaded in the following order (later sources override earlier):
    1. Default values
    2. Configuration file (if provided)
    3. Environment variables

    Args:
        config_path: Optional path to configuration file

    Returns:
        Merged configuration
    """
    data = section_dict(Config())
    if config_path is not None:
        data = _merge(data, _read_yaml(config_path))
    data = _merge(data, _env_overrides())

    try:
        return Config(**data)
    except ValidationError as e:
        raise ConfigError(f"Configuration validation failed: {e}") from e


def validate_config(config: Config) -> None:
    """Validate configuration for consistency and correctness.

    Args:
        config: Configuration to validate

    Raises:
        ConfigError: If configuration is invalid
    """
    budget = config.budget
    if not (
        0 <= budget.critical_reserve
        < budget.low_reserve
        < budget.medium_reserve
        < budget.high_reserve
    ):
        raise ConfigError(
            "budget reserves must satisfy critical < low < medium < high, got "
            f"{budget.critical_reserve}, {budget.low_reserve}, "
            f"{budget.medium_reserve}, {budget.high_reserve}"
        )
    if budget.window <= 0:
        raise ConfigError("budget.window must be positive")
    if not 0 < budget.exit_utilization < budget.enter_utilization:
        raise ConfigError("budget.exit_utilization must be below enter_utilization")
    if budget.base_refresh_interval <= 0:
        raise ConfigError("budget.base_refresh_interval must be positive")

    if config.cache.fast_ttl <= 0 or config.cache.slow_ttl <= 0:
        raise ConfigError("cache TTLs must be positive")
    if config.cache.max_entries <= 0:
        raise ConfigError("cache.max_entries must be positive")

    market = config.market
    if market.stale_timeout <= 0:
        raise ConfigError("market.stale_timeout must be positive")
    if market.wait_cap < 0 or market.wait_rate < 0 or market.wait_grace < 0:
        raise ConfigError("market wait parameters must be non-negative")
    if market.distance_weight < 0:
        raise ConfigError("market.distance_weight must be non-negative")

    agents = config.agents
    if agents.search_cooldown < 0:
        raise ConfigError("agents.search_cooldown must be non-negative")
    if agents.path_hint_budget <= 0:
        raise ConfigError("agents.path_hint_budget must be positive")
    if not 0 < agents.refill_threshold <= 1:
        raise ConfigError("agents.refill_threshold must be in (0, 1]")

    orchestrator = config.orchestrator
    for name in (
        "hygiene_interval",
        "hygiene_batch_size",
        "stats_interval",
        "cache_clear_interval",
        "error_ring_size",
    ):
        if getattr(orchestrator, name) <= 0:
            raise ConfigError(f"orchestrator.{name} must be positive")
    if orchestrator.compute_limit <= 0:
        raise ConfigError("orchestrator.compute_limit must be positive")

    if config.metrics.port <= 0 or config.metrics.port > 65535:
        raise ConfigError("metrics.port must be between 1 and 65535")
