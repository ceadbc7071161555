"""Run the orchestrator against the in-memory demo world."""

from pathlib import Path

import orjson

from colony.cache.durable import JsonFileDurableStore
from colony.config import ConfigError, load_config, validate_config
from colony.core.orchestrator import CycleOrchestrator
from colony.utils.telemetry import (
    get_logger,
    setup_logging,
    setup_tracing,
    start_metrics_server,
)
from colony.world.grid import demo_world

logger = get_logger(__name__)


def run_simulate_command(args: list[str]) -> int:
    """Simulate a small colony and print the final diagnostics.

    Args:
        args: Command line arguments (--cycles N, --config path, --state path)

    Returns:
        Exit code (0 for success, 1 for error)
    """
    cycles = 200
    config_path: Path | None = None
    state_path: Path | None = None

    i = 0
    while i < len(args):
        arg = args[i]
        if arg in ["--cycles", "-n", "--config", "-c", "--state"]:
            if i + 1 >= len(args):
                print(f"Error: {arg} requires a value")
                return 1
            value = args[i + 1]
            if arg in ["--cycles", "-n"]:
                try:
                    cycles = int(value)
                except ValueError:
                    print(f"Error: --cycles expects an integer, got {value}")
                    return 1
            elif arg == "--state":
                state_path = Path(value)
            else:
                config_path = Path(value)
            i += 2
        else:
            print(f"Unknown argument: {arg}")
            return 1

    if cycles <= 0:
        print("Error: --cycles must be positive")
        return 1

    try:
        config = load_config(config_path)
        validate_config(config)
    except ConfigError as e:
        print(f"Error loading configuration: {e}")
        return 1

    setup_logging(config.logging.level, json_output=config.logging.format == "json")
    if config.metrics.tracing:
        setup_tracing("colony")
    if config.metrics.enabled:
        start_metrics_server(config.metrics.port)

    world = demo_world()
    store = JsonFileDurableStore(state_path) if state_path is not None else None
    orchestrator = CycleOrchestrator.from_config(world, config, store=store)
    if store is not None:
        orchestrator.restore()

    logger.info("Simulation started", cycles=cycles, agents=len(world.agents()))
    diagnostics = None
    for _ in range(cycles):
        diagnostics = orchestrator.run_cycle(world.tick)
        world.advance()

    print(orjson.dumps(diagnostics.model_dump(mode="json"), option=orjson.OPT_INDENT_2).decode())
    return 0
