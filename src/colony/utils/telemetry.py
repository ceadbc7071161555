"""Telemetry utilities for logging, metrics, and tracing.

This module provides centralized observability infrastructure including:
- Structured logging with structlog
- Prometheus metrics collection
- OpenTelemetry tracing setup
- Phase timing against the cycle compute meter
- Per-key throttled logging
"""

import logging
import time
from collections.abc import Callable
from typing import Any

import structlog
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from structlog.processors import JSONRenderer

# Prometheus metrics
TIER_COMPUTE_USAGE = Counter(
    "colony_tier_compute_total",
    "Compute charged to each priority tier",
    ["tier"],
)

TIER_SKIPPED = Counter(
    "colony_tier_skipped_total",
    "Cycles in which a tier was gated off",
    ["tier"],
)

BUDGET_LEVEL_GAUGE = Gauge(
    "colony_budget_level",
    "Current budget level (0 normal, 1 degraded high, 2 degraded critical)",
)

BUDGET_LEVEL_CHANGES = Counter(
    "colony_budget_level_changes_total",
    "Budget level transitions",
    ["from_level", "to_level"],
)

RESERVE_GAUGE = Gauge(
    "colony_reserve",
    "Compute reserve reported for the last cycle",
)

UTILIZATION_GAUGE = Gauge(
    "colony_utilization_mean",
    "Rolling mean of used/limit",
)

OPEN_REQUESTS_GAUGE = Gauge(
    "colony_open_requests",
    "Open resource requests",
    ["zone"],
)

REQUEST_MATCHES = Counter(
    "colony_request_matches_total",
    "Requests matched to a fulfiller",
    ["zone"],
)

REQUEST_REMOVALS = Counter(
    "colony_request_removals_total",
    "Requests removed from the market",
    ["reason"],
)

CACHE_LOOKUPS = Counter(
    "colony_cache_lookups_total",
    "World fact cache lookups",
    ["result"],
)

DURABLE_WRITES = Counter(
    "colony_durable_writes_total",
    "Writes applied to the durable store by flushes",
)

AGENT_FAULTS = Counter(
    "colony_agent_faults_total",
    "Agent steps that raised",
    ["role"],
)

ORCHESTRATOR_FAULTS = Counter(
    "colony_orchestrator_faults_total",
    "Faults caught at the top of a cycle",
)

ACTIVE_AGENTS_GAUGE = Gauge(
    "colony_active_agents",
    "Registered agents",
)

PHASE_DURATION = Histogram(
    "colony_phase_compute",
    "Compute spent per cycle phase",
    ["phase"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 50.0],
)

_LEVEL_VALUES = {"normal": 0, "degraded_high": 1, "degraded_critical": 2}


def setup_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Initialize structured logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: Render JSON lines instead of console output
    """
    logging.basicConfig(format="%(message)s", level=log_level.upper())

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_output:
        processors.append(JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def setup_tracing(service_name: str = "colony", console: bool = False) -> None:
    """Initialize OpenTelemetry tracing.

    Args:
        service_name: Name of the service for tracing
        console: Export spans to the console
    """
    from colony import __version__

    resource = Resource.create(
        {"service.name": service_name, "service.version": __version__}
    )
    tracer_provider = TracerProvider(resource=resource)
    if console:
        tracer_provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(tracer_provider)


def get_tracer(name: str) -> trace.Tracer:
    """Get OpenTelemetry tracer for a component."""
    return trace.get_tracer(name)


def get_logger(name: str, **context: Any) -> Any:
    """Get a structured logger with optional context.

    Args:
        name: Logger name
        **context: Additional context to bind to logger

    Returns:
        Bound logger with context
    """
    logger = structlog.get_logger(name)
    if context:
        logger = logger.bind(**context)
    return logger


def log_operation(
    logger: Any,
    operation: str,
    status: str = "success",
    tick: int | None = None,
    agent_id: str | None = None,
    compute: float | None = None,
    **extra_context: Any,
) -> None:
    """Log an operation with standardized fields.

    Args:
        logger: Structured logger instance
        operation: Operation name
        status: Operation status (success, error, warning)
        tick: Cycle tick
        agent_id: Agent identifier
        compute: Compute used by the operation
        **extra_context: Additional context fields
    """
    log_data = {"operation": operation, "status": status, **extra_context}

    if tick is not None:
        log_data["tick"] = tick
    if agent_id is not None:
        log_data["agent_id"] = agent_id
    if compute is not None:
        log_data["compute"] = round(compute, 4)

    if status == "error":
        logger.error("Operation completed", **log_data)
    elif status == "warning":
        logger.warning("Operation completed", **log_data)
    else:
        logger.debug("Operation completed", **log_data)


class PerformanceTimer:
    """Context manager measuring one cycle phase.

    Reads the supplied clock (the cycle's compute meter) on entry and exit,
    records the phase histogram and optionally a tracing span.
    """

    def __init__(
        self,
        phase: str,
        clock: Callable[[], float] | None = None,
        tick: int | None = None,
        logger: Any = None,
        record_metrics: bool = True,
        create_span: bool = False,
        tracer_name: str = "colony.cycle",
    ):
        self.phase = phase
        self.clock = clock or (lambda: time.perf_counter() * 1000.0)
        self.tick = tick
        self.logger = logger or get_logger("colony.performance")
        self.record_metrics = record_metrics
        self.tracer = get_tracer(tracer_name) if create_span else None
        self.span: trace.Span | None = None
        self.start: float | None = None
        self.end: float | None = None

    def __enter__(self) -> "PerformanceTimer":
        self.start = self.clock()
        if self.tracer:
            self.span = self.tracer.start_span(self.phase)
            if self.tick is not None:
                self.span.set_attribute("tick", self.tick)
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.end = self.clock()
        used = self.end - (self.start or 0.0)
        status = "error" if exc_type else "success"

        if self.record_metrics:
            PHASE_DURATION.labels(phase=self.phase).observe(used)

        if self.span:
            self.span.set_attribute("compute", used)
            if exc_type:
                self.span.set_status(trace.Status(trace.StatusCode.ERROR, str(exc_val)))
                self.span.record_exception(exc_val)
            else:
                self.span.set_status(trace.Status(trace.StatusCode.OK))
            self.span.end()

        log_operation(self.logger, self.phase, status=status, tick=self.tick, compute=used)

    @property
    def used(self) -> float | None:
        """Compute used by the phase, once it has finished."""
        if self.start is not None and self.end is not None:
            return self.end - self.start
        return None


class ThrottledLogger:
    """Logs a given key at most once per interval of ticks.

    Repeated per-agent failures (a node that vanished, a missing depot) would
    otherwise print every cycle.
    """

    def __init__(self, logger: Any, interval: int = 100):
        self._logger = logger
        self.interval = interval
        self._last: dict[str, int] = {}

    def warning(self, key: str, tick: int, event: str, **fields: Any) -> bool:
        """Log a warning unless this key was logged within the interval.

        Returns:
            True if the message was emitted
        """
        last = self._last.get(key)
        if last is not None and tick - last < self.interval:
            return False
        self._last[key] = tick
        self._logger.warning(event, key=key, tick=tick, **fields)
        return True

    def forget(self, prefix: str) -> None:
        """Drop throttle state for keys with the given prefix."""
        for key in [k for k in self._last if k.startswith(prefix)]:
            del self._last[key]


def record_tier_usage(tier: str, used: float) -> None:
    TIER_COMPUTE_USAGE.labels(tier=tier).inc(max(0.0, used))


def record_tier_skipped(tier: str) -> None:
    TIER_SKIPPED.labels(tier=tier).inc()


def record_budget_level(level: str, previous: str | None = None) -> None:
    """Export the budget level and count the transition."""
    BUDGET_LEVEL_GAUGE.set(_LEVEL_VALUES.get(level, 0))
    if previous is not None and previous != level:
        BUDGET_LEVEL_CHANGES.labels(from_level=previous, to_level=level).inc()


def record_budget_sample(reserve: float, mean_utilization: float) -> None:
    RESERVE_GAUGE.set(reserve)
    UTILIZATION_GAUGE.set(mean_utilization)


def record_open_requests(zone: str, count: int) -> None:
    OPEN_REQUESTS_GAUGE.labels(zone=zone).set(count)


def record_request_match(zone: str) -> None:
    REQUEST_MATCHES.labels(zone=zone).inc()


def record_request_removal(reason: str) -> None:
    REQUEST_REMOVALS.labels(reason=reason).inc()


def record_cache_lookup(hit: bool) -> None:
    CACHE_LOOKUPS.labels(result="hit" if hit else "miss").inc()


def record_durable_writes(count: int) -> None:
    DURABLE_WRITES.inc(count)


def record_agent_fault(role: str) -> None:
    AGENT_FAULTS.labels(role=role).inc()


def record_orchestrator_fault() -> None:
    ORCHESTRATOR_FAULTS.inc()


def update_active_agents_count(count: int) -> None:
    ACTIVE_AGENTS_GAUGE.set(count)


def start_metrics_server(port: int = 8000) -> None:
    """Start Prometheus metrics HTTP server."""
    start_http_server(port)
