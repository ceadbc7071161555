# Shared utilities and helpers

from .errors import (
    AgentStepError,
    ColonyError,
    DurableFlushError,
    ErrorRecord,
    ErrorRing,
    OrchestratorFaultError,
    RecoveryAction,
)
from .telemetry import (
    PerformanceTimer,
    ThrottledLogger,
    get_logger,
    get_tracer,
    log_operation,
    setup_logging,
    setup_tracing,
    start_metrics_server,
)

__all__ = [
    "AgentStepError",
    "ColonyError",
    "DurableFlushError",
    "ErrorRecord",
    "ErrorRing",
    "OrchestratorFaultError",
    "PerformanceTimer",
    "RecoveryAction",
    "ThrottledLogger",
    "get_logger",
    "get_tracer",
    "log_operation",
    "setup_logging",
    "setup_tracing",
    "start_metrics_server",
]
