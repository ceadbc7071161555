"""Cycle budget control."""

from .controller import BudgetController, BudgetPolicy, gate
from .meter import ComputeMeter, PerfCounterMeter, ReserveBucket

__all__ = [
    "BudgetController",
    "BudgetPolicy",
    "ComputeMeter",
    "PerfCounterMeter",
    "ReserveBucket",
    "gate",
]
