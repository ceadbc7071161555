"""Data model for colony state."""

from .models import (
    AgentRecord,
    BuilderRecord,
    BuilderState,
    Diagnostics,
    GathererRecord,
    GathererState,
    ResourceNodeRecord,
    ResourceRequest,
    TransporterRecord,
    TransporterState,
    UpgraderRecord,
    UpgraderState,
)
from .types import (
    Action,
    ActionResult,
    AgentSighting,
    BudgetLevel,
    CachedTarget,
    EntityKind,
    EntityRef,
    MoveResult,
    Position,
    Role,
    Tier,
)

__all__ = [
    "Action",
    "ActionResult",
    "AgentRecord",
    "AgentSighting",
    "BudgetLevel",
    "BuilderRecord",
    "BuilderState",
    "CachedTarget",
    "Diagnostics",
    "EntityKind",
    "EntityRef",
    "GathererRecord",
    "GathererState",
    "MoveResult",
    "Position",
    "ResourceNodeRecord",
    "ResourceRequest",
    "Role",
    "Tier",
    "TransporterRecord",
    "TransporterState",
    "UpgraderRecord",
    "UpgraderState",
]
