"""Configuration management for colony.

This module provides configuration loading and validation for the
scheduling core, from YAML files and COLONY_* environment variables.
"""

from .config import (
    CacheConfig,
    Config,
    ENV_VARS,
    ConfigError,
    LoggingConfig,
    MetricsConfig,
    load_config,
    load_config_from_env,
    load_config_from_file,
    section_dict,
    validate_config,
)

__all__ = [
    "ENV_VARS",
    "CacheConfig",
    "Config",
    "ConfigError",
    "LoggingConfig",
    "MetricsConfig",
    "load_config",
    "load_config_from_env",
    "load_config_from_file",
    "section_dict",
    "validate_config",
]
