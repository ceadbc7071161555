"""Structured error types for the colony core.

Transient reference loss and resource exhaustion are not errors: lookups
return ``None`` and callers fall through to the next strategy. The types
here cover genuine faults, each carrying the recovery the orchestrator
applies.
"""

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class RecoveryAction(Enum):
    """Recovery actions for error handling."""

    FALLBACK = "fallback"
    DEGRADE = "degrade"
    DISCARD = "discard"
    ABORT = "abort"


class ColonyError(Exception):
    """Base exception for colony errors."""

    def __init__(
        self, message: str, recovery_action: RecoveryAction = RecoveryAction.ABORT
    ):
        """Initialize colony error.

        Args:
            message: Error message
            recovery_action: Suggested recovery action
        """
        super().__init__(message)
        self.recovery_action = recovery_action


class AgentStepError(ColonyError):
    """A fault raised while stepping one agent.

    The agent is given a return-to-base fallback for the rest of the cycle;
    other agents are unaffected.
    """

    def __init__(self, agent_id: str, role: str, tick: int, cause: BaseException):
        """Initialize agent step error.

        Args:
            agent_id: Agent whose step failed
            role: Role of the agent
            tick: Cycle tick the fault happened in
            cause: Original exception
        """
        self.agent_id = agent_id
        self.role = role
        self.tick = tick
        self.cause = cause

        message = (
            f"{role} {agent_id} failed at tick {tick}: "
            f"{type(cause).__name__}: {cause}"
        )
        super().__init__(message, RecoveryAction.FALLBACK)


class OrchestratorFaultError(ColonyError):
    """A fault that escaped per-agent isolation inside a cycle.

    The budget controller is forced into critical degradation for the rest
    of the run.
    """

    def __init__(self, tick: int, phase: str, cause: BaseException):
        """Initialize orchestrator fault.

        Args:
            tick: Cycle tick
            phase: Cycle phase that was running
            cause: Original exception
        """
        self.tick = tick
        self.phase = phase
        self.cause = cause

        message = (
            f"Cycle {tick} failed in phase {phase}: {type(cause).__name__}: {cause}"
        )
        super().__init__(message, RecoveryAction.DEGRADE)


class DurableFlushError(ColonyError):
    """Error raised when the durable store rejects a flush.

    Staged values are re-derivable, so the batch is discarded.
    """

    def __init__(self, store: str, writes: int, cause: BaseException):
        """Initialize flush error.

        Args:
            store: Store description
            writes: Number of writes in the failed batch
            cause: Original exception
        """
        self.store = store
        self.writes = writes
        self.cause = cause

        message = f"Flush of {writes} writes to {store} failed: {cause}"
        super().__init__(message, RecoveryAction.DISCARD)


@dataclass
class ErrorRecord:
    """One diagnosed fault.

    Attributes:
        tick: Cycle tick
        source: Component or role that failed
        message: Error message
        agent_id: Agent involved, if any
        args: Short descriptions of the arguments involved
    """

    tick: int
    source: str
    message: str
    agent_id: str | None = None
    args: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        who = f"{self.source}:{self.agent_id}" if self.agent_id else self.source
        return f"[{self.tick}] {who} {self.message}"


def describe_arg(arg: Any, limit: int = 50) -> str:
    """Short, log-safe description of an argument."""
    for attr in ("id", "name"):
        value = getattr(arg, attr, None)
        if isinstance(value, str):
            return value
    return repr(arg)[:limit]


class ErrorRing:
    """Bounded buffer keeping the most recent faults for diagnosis."""

    def __init__(self, capacity: int = 10):
        """Initialize error ring.

        Args:
            capacity: Number of records kept
        """
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._records: deque[ErrorRecord] = deque(maxlen=capacity)
        self._total = 0

    def record(
        self,
        tick: int,
        source: str,
        error: BaseException,
        agent_id: str | None = None,
        args: tuple[Any, ...] = (),
    ) -> ErrorRecord:
        """Store a fault, dropping the oldest when full."""
        entry = ErrorRecord(
            tick=tick,
            source=source,
            message=str(error) or type(error).__name__,
            agent_id=agent_id,
            args=[describe_arg(a) for a in args],
        )
        self._records.append(entry)
        self._total += 1
        return entry

    def records(self) -> list[ErrorRecord]:
        return list(self._records)

    @property
    def total(self) -> int:
        """Faults recorded since creation, including dropped ones."""
        return self._total

    def clear(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)
