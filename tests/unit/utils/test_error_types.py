"""Tests for structured errors and the fault ring."""

import pytest
from conftest import pos

from colony.schemas.types import CachedTarget
from colony.utils.errors import (
    AgentStepError,
    DurableFlushError,
    ErrorRing,
    OrchestratorFaultError,
    RecoveryAction,
    describe_arg,
)


class TestErrorTypes:
    """Test error messages and recovery actions."""

    def test_agent_step_error(self):
        cause = KeyError("node-a")
        error = AgentStepError("g1", "gatherer", 12, cause)

        assert error.recovery_action is RecoveryAction.FALLBACK
        assert error.cause is cause
        assert "gatherer g1 failed at tick 12" in str(error)
        assert "KeyError" in str(error)

    def test_orchestrator_fault(self):
        error = OrchestratorFaultError(7, "census", RuntimeError("boom"))

        assert error.recovery_action is RecoveryAction.DEGRADE
        assert str(error) == "Cycle 7 failed in phase census: RuntimeError: boom"

    def test_durable_flush_error(self):
        error = DurableFlushError("InMemoryDurableStore", 3, OSError("disk full"))

        assert error.recovery_action is RecoveryAction.DISCARD
        assert error.writes == 3
        assert "3 writes" in str(error)


class TestDescribeArg:
    """Test short argument descriptions."""

    def test_prefers_id(self):
        assert describe_arg(CachedTarget("site-1", pos(1, 1))) == "site-1"

    def test_falls_back_to_repr(self):
        assert describe_arg(42) == "42"

    def test_truncates(self):
        assert len(describe_arg("x" * 200)) == 50


class TestErrorRing:
    """Test the bounded fault buffer."""

    def test_keeps_most_recent(self):
        """Test the oldest record is dropped once full."""
        ring = ErrorRing(capacity=3)
        for tick in range(5):
            ring.record(tick, "builder", RuntimeError(f"fault {tick}"), agent_id="b1")

        assert len(ring) == 3
        assert ring.total == 5
        assert [r.tick for r in ring.records()] == [2, 3, 4]

    def test_record_fields(self):
        ring = ErrorRing()
        entry = ring.record(
            4, "transporter", ValueError(), agent_id="t1", args=(pos(3, 4),)
        )

        assert entry.message == "ValueError"
        assert entry.args == [repr(pos(3, 4))[:50]]
        assert str(entry) == "[4] transporter:t1 ValueError"

    def test_record_without_agent(self):
        entry = ErrorRing().record(9, "orchestrator.census", RuntimeError("boom"))
        assert str(entry) == "[9] orchestrator.census boom"

    def test_clear_keeps_total(self):
        ring = ErrorRing()
        ring.record(1, "x", RuntimeError("a"))
        ring.clear()

        assert len(ring) == 0
        assert ring.total == 1

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            ErrorRing(capacity=0)
