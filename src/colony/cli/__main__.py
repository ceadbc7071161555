"""Entry point for `python -m colony` command."""

import sys


def main(args: list[str] | None = None) -> int:
    """Main entry point for the colony CLI."""
    if args is None:
        args = sys.argv[1:]

    if not args or args[0] in ["-h", "--help", "help"]:
        print_help()
        return 0

    command = args[0]

    if command == "version":
        print_version()
        return 0
    elif command == "config":
        return run_config(args[1:])
    elif command == "simulate":
        return run_simulate(args[1:])
    else:
        print(f"Unknown command: {command}")
        print_help()
        return 1


def print_help() -> None:
    """Print CLI help message."""
    print(
        """colony - Budget-aware colony scheduling core

Usage:
    python -m colony <command> [options]

Commands:
    version     Show version information
    config      Configuration management
    simulate    Run the orchestrator against a demo world
    help        Show this help message

Options:
    -h, --help  Show help message

Simulate options:
    -n, --cycles N      Cycles to run (default 200)
    -c, --config PATH   YAML configuration file
    --state PATH        JSON file to restore from and persist into
"""
    )


def print_version() -> None:
    """Print version information."""
    from colony import __version__

    print(f"colony {__version__}")


def run_config(args: list[str]) -> int:
    """Run the config command."""
    from colony.cli.config import run_config_command

    return run_config_command(args)


def run_simulate(args: list[str]) -> int:
    """Run the simulate command."""
    from colony.cli.simulate import run_simulate_command

    return run_simulate_command(args)


if __name__ == "__main__":
    sys.exit(main())
