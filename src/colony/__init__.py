"""colony - Budget-aware scheduling core for cycle-stepped worker colonies.

colony decides which work runs under a hard per-cycle compute budget,
memoizes expensive world queries behind a TTL cache, defers durable writes
to one flush per cycle, and matches transport agents to open resource
requests.
"""

__version__ = "0.1.0"

from .agents import BEHAVIORS, AgentContext, AgentSettings, RoleBehavior
from .budget import BudgetController, BudgetPolicy, PerfCounterMeter, ReserveBucket
from .cache import DurableStateBuffer, InMemoryDurableStore, JsonFileDurableStore, WorldFactsCache
from .config import Config, ConfigError, load_config
from .core import CycleOrchestrator, OrchestratorConfig
from .market import MarketPolicy, RequestMarket
from .schemas import BudgetLevel, Diagnostics, EntityKind, EntityRef, Position, Role, Tier
from .world import GridWorld, World
from .zone import ZoneManager

__all__ = [
    "BEHAVIORS",
    "AgentContext",
    "AgentSettings",
    "BudgetController",
    "BudgetLevel",
    "BudgetPolicy",
    "Config",
    "ConfigError",
    "CycleOrchestrator",
    "Diagnostics",
    "DurableStateBuffer",
    "EntityKind",
    "EntityRef",
    "GridWorld",
    "InMemoryDurableStore",
    "JsonFileDurableStore",
    "MarketPolicy",
    "OrchestratorConfig",
    "PerfCounterMeter",
    "Position",
    "RequestMarket",
    "ReserveBucket",
    "Role",
    "RoleBehavior",
    "Tier",
    "World",
    "WorldFactsCache",
    "ZoneManager",
    "__version__",
    "load_config",
]
