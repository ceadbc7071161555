"""Configuration management CLI commands."""

import json
from pathlib import Path

import yaml

from colony.config import (
    ENV_VARS,
    ConfigError,
    load_config,
    load_config_from_env,
    section_dict,
    validate_config,
)


def config_validate_command(args: list[str]) -> int:
    """Validate configuration file or environment variables.

    Args:
        args: Command line arguments

    Returns:
        Exit code (0 for success, 1 for error)
    """
    config_path = None
    if args and not args[0].startswith("-"):
        config_path = Path(args[0])

    try:
        if config_path:
            print(f"Validating configuration file: {config_path}")
            if not config_path.exists():
                print(f"Error: Configuration file not found: {config_path}")
                return 1
            config = load_config(config_path)
        else:
            print("Validating configuration from environment variables")
            config = load_config_from_env()

        validate_config(config)
        print("✓ Configuration is valid")
        return 0

    except ConfigError as e:
        print(f"✗ Configuration validation failed: {e}")
        return 1


def config_show_command(args: list[str]) -> int:
    """Show the effective configuration.

    Args:
        args: Command line arguments

    Returns:
        Exit code (0 for success, 1 for error)
    """
    format_type = "yaml"
    config_path = None

    i = 0
    while i < len(args):
        arg = args[i]
        if arg in ["--format", "-f"]:
            if i + 1 < len(args):
                format_type = args[i + 1]
                i += 2
            else:
                print("Error: --format requires a value")
                return 1
        elif arg.startswith("--format="):
            format_type = arg.split("=", 1)[1]
            i += 1
        elif not arg.startswith("-"):
            config_path = Path(arg)
            i += 1
        else:
            print(f"Unknown argument: {arg}")
            return 1

    if format_type not in ["yaml", "json"]:
        print(f"Error: Invalid format '{format_type}'. Use 'yaml' or 'json'")
        return 1

    try:
        config_dict = section_dict(load_config(config_path))
    except ConfigError as e:
        print(f"Error loading configuration: {e}")
        return 1

    if format_type == "json":
        print(json.dumps(config_dict, indent=2, default=str))
    else:
        print(yaml.safe_dump(config_dict, default_flow_style=False, sort_keys=True))
    return 0


def config_env_command(args: list[str]) -> int:
    """Show the COLONY_* environment variables that override configuration."""
    import os

    show_all = "--all" in args or "-a" in args

    print("Environment Variables:")
    for var, (section, field_name, _) in ENV_VARS.items():
        value = os.getenv(var)
        if value or show_all:
            print(f"  {var}={value or '(not set)'}  -> {section}.{field_name}")

    if not show_all:
        print("\nUse --all to show all variables (including unset)")
    return 0


def run_config_command(args: list[str]) -> int:
    """Run configuration management commands.

    Args:
        args: Command line arguments

    Returns:
        Exit code (0 for success, 1 for error)
    """
    if not args:
        print_config_help()
        return 0

    command = args[0]
    command_args = args[1:]

    if command == "validate":
        return config_validate_command(command_args)
    elif command == "show":
        return config_show_command(command_args)
    elif command == "env":
        return config_env_command(command_args)
    elif command in ["help", "-h", "--help"]:
        print_config_help()
        return 0
    else:
        print(f"Unknown config command: {command}")
        print_config_help()
        return 1


def print_config_help() -> None:
    """Print configuration command help."""
    print(
        """colony config - Configuration management

Usage:
    colony config <command> [options]

Commands:
    validate [file]     Validate configuration file or environment
    show [file]         Show effective configuration
                        Options: --format=yaml|json
    env                 Show COLONY_* environment variables
                        Options: --all
    help                Show this help message

Examples:
    colony config validate
    colony config validate colony.yaml
    colony config show --format=json
"""
    )
