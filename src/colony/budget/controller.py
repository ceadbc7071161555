"""Budget controller: which tiers of work may run this cycle.

The controller keeps a rolling window of utilization samples and moves
between three levels. Entering degradation reacts to either a high rolling
mean or a low reserve; leaving it needs both a low mean and a healthy
reserve, so the level does not oscillate.

The gate has two axes. The level decides the coarse cut, and under NORMAL
the instantaneous reserve sheds load immediately without waiting for the
rolling mean to catch up. Call sites consult ``may_run`` only; they never
read the level to make their own scheduling decisions.
"""

from collections import deque
from dataclasses import dataclass
from typing import Any

from colony.schemas.types import BudgetLevel, Tier
from colony.utils.telemetry import (
    get_logger,
    record_budget_level,
    record_budget_sample,
    record_tier_usage,
)

_TIER_ORDER = (Tier.CRITICAL, Tier.HIGH, Tier.MEDIUM, Tier.LOW)


@dataclass
class BudgetPolicy:
    """Thresholds for the budget controller.

    Attributes:
        window: Number of utilization samples averaged
        enter_utilization: Mean above which degradation starts
        exit_utilization: Mean below which recovery is allowed
        critical_reserve: Reserve below which degradation is critical
        low_reserve: Reserve below which degradation starts; under NORMAL,
            only critical work runs below it
        medium_reserve: Under NORMAL, only critical and high run below it
        high_reserve: Under NORMAL, low-tier work runs only above it
        recovery_reserve: Reserve required to leave degradation
        base_refresh_interval: Ticks between full zone refreshes under NORMAL
        degraded_stride: Under degradation, one agent in this many runs per tick
        degraded_min_group: Groups this small always run in full
        split_threshold: Under NORMAL, larger groups run half per tick
    """

    window: int = 10
    enter_utilization: float = 0.9
    exit_utilization: float = 0.7
    critical_reserve: float = 500
    low_reserve: float = 1000
    medium_reserve: float = 3000
    high_reserve: float = 7000
    recovery_reserve: float = 3000
    base_refresh_interval: int = 20
    degraded_stride: int = 3
    degraded_min_group: int = 3
    split_threshold: int = 10


def gate(level: BudgetLevel, reserve: float, tier: Tier, policy: BudgetPolicy) -> bool:
    """Decide whether work of a tier may run.

    Args:
        level: Current budget level
        reserve: Instantaneous reserve
        tier: Tier of the work
        policy: Thresholds

    Returns:
        True if the work may run
    """
    if tier is Tier.CRITICAL:
        return True
    if level is BudgetLevel.DEGRADED_CRITICAL:
        return False
    if level is BudgetLevel.DEGRADED_HIGH:
        return tier is Tier.HIGH

    if reserve < policy.low_reserve:
        return False
    if reserve < policy.medium_reserve:
        return tier is Tier.HIGH
    if reserve < policy.high_reserve:
        return tier is not Tier.LOW
    return True


class BudgetController:
    """Tracks utilization and reserve, and gates work by tier."""

    def __init__(self, policy: BudgetPolicy | None = None, initial_reserve: float = 10_000):
        """Initialize controller.

        Args:
            policy: Threshold configuration
            initial_reserve: Reserve assumed before the first sample
        """
        self.policy = policy or BudgetPolicy()
        self.level = BudgetLevel.NORMAL
        self.degraded_since: int | None = None
        self.reason: str | None = None
        self.reserve = initial_reserve

        self._samples: deque[float] = deque(maxlen=self.policy.window)
        self._sticky = False
        self._gate_tick: int | None = None
        self._gate: dict[Tier, bool] = {}
        self._tier_usage: dict[Tier, float] = dict.fromkeys(_TIER_ORDER, 0.0)
        self._logger = get_logger("colony.budget")

        record_budget_level(self.level.value)

    @property
    def mean_utilization(self) -> float:
        if not self._samples:
            return 0.0
        return sum(self._samples) / len(self._samples)

    @property
    def failsafe(self) -> bool:
        """True once an orchestrator fault pinned the level to critical."""
        return self._sticky

    def begin_cycle(self, tick: int, reserve: float) -> dict[Tier, bool]:
        """Compute this cycle's gate before any gated work runs.

        Args:
            tick: Current tick
            reserve: Instantaneous reserve at cycle start

        Returns:
            Decision per tier for this cycle
        """
        self.reserve = reserve
        self._gate_tick = tick
        self._gate = {t: gate(self.level, reserve, t, self.policy) for t in _TIER_ORDER}
        self._tier_usage = dict.fromkeys(_TIER_ORDER, 0.0)
        return dict(self._gate)

    def may_run(self, tier: Tier) -> bool:
        """Whether work of ``tier`` may run this cycle."""
        if self._gate_tick is not None and tier in self._gate:
            return self._gate[tier]
        return gate(self.level, self.reserve, tier, self.policy)

    def charge(self, tier: Tier, used: float) -> None:
        """Account compute spent on a tier during the current cycle."""
        self._tier_usage[tier] = self._tier_usage.get(tier, 0.0) + used
        record_tier_usage(tier.value, used)

    @property
    def tier_usage(self) -> dict[Tier, float]:
        return dict(self._tier_usage)

    def record_cycle(self, used: float, limit: float, reserve: float, tick: int) -> BudgetLevel:
        """Fold one finished cycle into the window and update the level.

        Args:
            used: Compute used by the cycle
            limit: Per-cycle compute limit
            reserve: Reserve after the cycle
            tick: Tick of the cycle

        Returns:
            Level after the update
        """
        ratio = used / limit if limit > 0 else 1.0
        self._samples.append(ratio)
        self.reserve = reserve
        mean = self.mean_utilization
        record_budget_sample(reserve, mean)

        if self._sticky:
            return self.level

        p = self.policy
        if mean > p.enter_utilization or reserve < p.low_reserve:
            target = (
                BudgetLevel.DEGRADED_CRITICAL
                if reserve < p.critical_reserve
                else BudgetLevel.DEGRADED_HIGH
            )
            if self.level is BudgetLevel.NORMAL or (
                self.level is BudgetLevel.DEGRADED_HIGH
                and target is BudgetLevel.DEGRADED_CRITICAL
            ):
                self._transition(target, tick, "overload", mean=mean)
        elif (
            self.level.degraded
            and mean < p.exit_utilization
            and reserve > p.recovery_reserve
        ):
            self._transition(BudgetLevel.NORMAL, tick, None, mean=mean)

        return self.level

    def escalate(self, level: BudgetLevel, reason: str, tick: int) -> None:
        """Raise the level on an external signal; never lowers it."""
        if _rank(level) > _rank(self.level):
            self._transition(level, tick, reason, mean=self.mean_utilization)

    def force_critical(self, reason: str, tick: int) -> None:
        """Pin the level to critical for the remainder of the run."""
        self._sticky = True
        if self.level is not BudgetLevel.DEGRADED_CRITICAL:
            self._transition(
                BudgetLevel.DEGRADED_CRITICAL, tick, reason, mean=self.mean_utilization
            )
        else:
            self.reason = reason

    def refresh_interval(self) -> int:
        """Ticks between full zone refreshes at the current level."""
        base = self.policy.base_refresh_interval
        if self.level is BudgetLevel.DEGRADED_CRITICAL:
            return base * 5
        if self.level is BudgetLevel.DEGRADED_HIGH:
            return base * 5 // 2
        if self.reserve < self.policy.medium_reserve:
            return base * 2
        return base

    def stride(self, group_size: int) -> int:
        """Run one agent in ``stride`` of a role group this tick."""
        p = self.policy
        if self.level.degraded and group_size > p.degraded_min_group:
            return p.degraded_stride
        if group_size > p.split_threshold:
            return 2
        return 1

    def _transition(
        self, level: BudgetLevel, tick: int, reason: str | None, mean: float
    ) -> None:
        previous = self.level
        self.level = level
        record_budget_level(level.value, previous.value)

        if level is BudgetLevel.NORMAL:
            duration = tick - self.degraded_since if self.degraded_since is not None else 0
            self._logger.info(
                "Leaving degraded budget mode",
                tick=tick,
                previous=previous.value,
                degraded_ticks=duration,
                mean_utilization=round(mean, 3),
                reserve=self.reserve,
            )
            self.degraded_since = None
            self.reason = None
        else:
            if previous is BudgetLevel.NORMAL:
                self.degraded_since = tick
            self.reason = reason
            self._logger.warning(
                "Entering degraded budget mode",
                tick=tick,
                level=level.value,
                previous=previous.value,
                reason=reason,
                mean_utilization=round(mean, 3),
                reserve=self.reserve,
            )

        # Re-evaluate the gate if the cycle already opened it.
        if self._gate_tick is not None:
            self._gate = {t: gate(self.level, self.reserve, t, self.policy) for t in _TIER_ORDER}

    def get_stats(self) -> dict[str, Any]:
        return {
            "level": self.level.value,
            "reason": self.reason,
            "degraded_since": self.degraded_since,
            "failsafe": self._sticky,
            "reserve": self.reserve,
            "mean_utilization": self.mean_utilization,
            "samples": len(self._samples),
            "tier_usage": {t.value: u for t, u in self._tier_usage.items()},
        }


def _rank(level: BudgetLevel) -> int:
    return {
        BudgetLevel.NORMAL: 0,
        BudgetLevel.DEGRADED_HIGH: 1,
        BudgetLevel.DEGRADED_CRITICAL: 2,
    }[level]
