"""Compute metering and the replenishing budget reserve.

The host normally reports compute used this cycle, the per-cycle limit and
the accumulated reserve. ``PerfCounterMeter`` stands in for hosts that do
not, measuring wall time and keeping its own ``ReserveBucket``.
"""

import time
from typing import Protocol


class ComputeMeter(Protocol):
    """Compute accounting supplied by the host."""

    @property
    def limit(self) -> float:
        """Compute allowed per cycle."""
        ...

    @property
    def reserve(self) -> float:
        """Accumulated reserve available to absorb overruns."""
        ...

    def used(self) -> float:
        """Compute used so far in the current cycle."""
        ...

    def begin_cycle(self, tick: int) -> None:
        ...

    def end_cycle(self, used: float) -> None:
        ...


class ReserveBucket:
    """Token bucket refilled once per cycle by the unused part of the limit.

    Overruns drain it; light cycles refill it up to capacity.
    """

    def __init__(self, capacity: float = 10_000.0, initial: float | None = None):
        """Initialize bucket.

        Args:
            capacity: Maximum reserve
            initial: Starting reserve (defaults to full)
        """
        self.capacity = capacity
        self._level = capacity if initial is None else min(capacity, max(0.0, initial))

    @property
    def level(self) -> float:
        return self._level

    def settle(self, used: float, limit: float) -> float:
        """Apply one cycle's usage.

        Args:
            used: Compute used this cycle
            limit: Per-cycle limit

        Returns:
            Reserve after the cycle
        """
        self._level = min(self.capacity, max(0.0, self._level + limit - used))
        return self._level

    def reset(self, level: float | None = None) -> None:
        self._level = self.capacity if level is None else min(self.capacity, max(0.0, level))


class PerfCounterMeter:
    """Measures cycle compute as wall-clock milliseconds."""

    def __init__(self, limit: float = 20.0, bucket: ReserveBucket | None = None):
        """Initialize meter.

        Args:
            limit: Milliseconds allowed per cycle
            bucket: Reserve bucket (full 10000 bucket if not given)
        """
        self._limit = limit
        self.bucket = bucket or ReserveBucket()
        self._start = time.perf_counter()

    @property
    def limit(self) -> float:
        return self._limit

    @property
    def reserve(self) -> float:
        return self.bucket.level

    def used(self) -> float:
        return (time.perf_counter() - self._start) * 1000.0

    def begin_cycle(self, tick: int) -> None:
        self._start = time.perf_counter()

    def end_cycle(self, used: float) -> None:
        self.bucket.settle(used, self._limit)
