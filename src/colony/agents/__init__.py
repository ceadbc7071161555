"""Worker role state machines."""

from .base import AgentContext, AgentSettings, RoleBehavior, class_ranker, kind_ranker
from .builder import BuilderBehavior
from .gatherer import GathererBehavior
from .transporter import TransporterBehavior
from .upgrader import UpgraderBehavior

BEHAVIORS: tuple[type[RoleBehavior], ...] = (
    GathererBehavior,
    TransporterBehavior,
    UpgraderBehavior,
    BuilderBehavior,
)

__all__ = [
    "BEHAVIORS",
    "AgentContext",
    "AgentSettings",
    "BuilderBehavior",
    "GathererBehavior",
    "RoleBehavior",
    "TransporterBehavior",
    "UpgraderBehavior",
    "class_ranker",
    "kind_ranker",
]
