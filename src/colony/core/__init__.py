"""Cycle orchestration."""

from .orchestrator import CycleOrchestrator, OrchestratorConfig

__all__ = ["CycleOrchestrator", "OrchestratorConfig"]
