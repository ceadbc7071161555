"""Tests for logging and timing helpers."""

import pytest

from colony.utils.telemetry import PerformanceTimer, ThrottledLogger, get_logger


class RecordingLogger:
    def __init__(self):
        self.calls = []

    def warning(self, event, **fields):
        self.calls.append(("warning", event, fields))

    def info(self, event, **fields):
        self.calls.append(("info", event, fields))

    def debug(self, event, **fields):
        self.calls.append(("debug", event, fields))

    def error(self, event, **fields):
        self.calls.append(("error", event, fields))


class TestThrottledLogger:
    """Test per-key log throttling."""

    def test_once_per_interval(self):
        """Test a key logs again only after the interval passes."""
        logger = RecordingLogger()
        throttled = ThrottledLogger(logger, interval=10)

        emitted = [throttled.warning("g1:step", tick, "Agent step failed") for tick in (0, 5, 9, 10, 12)]

        assert emitted == [True, False, False, True, False]
        assert logger.calls[0] == ("warning", "Agent step failed", {"key": "g1:step", "tick": 0})

    def test_keys_are_independent(self):
        throttled = ThrottledLogger(RecordingLogger(), interval=10)

        assert throttled.warning("g1:step", 0, "x")
        assert throttled.warning("g2:step", 1, "x")

    def test_forget_prefix(self):
        logger = RecordingLogger()
        throttled = ThrottledLogger(logger, interval=100)
        throttled.warning("g1:step", 0, "x")
        throttled.warning("g2:step", 0, "x")

        throttled.forget("g1:")

        assert throttled.warning("g1:step", 1, "x")
        assert not throttled.warning("g2:step", 1, "x")


class TestPerformanceTimer:
    """Test phase timing against a supplied clock."""

    def test_measures_clock_delta(self):
        readings = iter([2.0, 5.5])
        logger = RecordingLogger()

        with PerformanceTimer("census", clock=lambda: next(readings), tick=3, logger=logger) as timer:
            assert timer.used is None

        assert timer.used == pytest.approx(3.5)
        assert logger.calls[-1][0] == "debug"
        assert logger.calls[-1][2]["tick"] == 3

    def test_error_status(self):
        readings = iter([0.0, 1.0])
        logger = RecordingLogger()

        with pytest.raises(RuntimeError):
            with PerformanceTimer("dispatch", clock=lambda: next(readings), logger=logger):
                raise RuntimeError("boom")

        assert logger.calls[-1][0] == "error"

    def test_span_creation(self):
        readings = iter([0.0, 1.0])

        with PerformanceTimer(
            "market", clock=lambda: next(readings), logger=RecordingLogger(), create_span=True
        ) as timer:
            assert timer.span is not None

        assert timer.used == 1.0


def test_get_logger_binds_context():
    logger = get_logger("colony.test", zone="W1N1")
    assert logger is not None
