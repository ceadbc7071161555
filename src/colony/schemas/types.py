"""Core value types shared by every colony component.

These are hot-path types: they are created and compared many times per
cycle, so they are plain enums, named tuples and frozen dataclasses rather
than validated pydantic models.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, NamedTuple

# Distance reported between positions in different zones.
CROSS_ZONE_DISTANCE = 1_000


class Position(NamedTuple):
    """A location inside one zone of the world."""

    x: Annotated[int, "Column inside the zone"]
    y: Annotated[int, "Row inside the zone"]
    zone: Annotated[str, "Zone identifier"]

    def range_to(self, other: "Position") -> int:
        """Chebyshev range to another position.

        Args:
            other: Position to measure to

        Returns:
            Range in tiles, or CROSS_ZONE_DISTANCE for a different zone
        """
        if self.zone != other.zone:
            return CROSS_ZONE_DISTANCE
        return max(abs(self.x - other.x), abs(self.y - other.y))

    def is_near(self, other: "Position", distance: int = 1) -> bool:
        return self.range_to(other) <= distance


class Role(str, Enum):
    """Worker roles."""

    GATHERER = "gatherer"
    TRANSPORTER = "transporter"
    BUILDER = "builder"
    UPGRADER = "upgrader"


class Tier(str, Enum):
    """Priority tier of a unit of recurring work."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class BudgetLevel(str, Enum):
    """Operating level of the budget controller."""

    NORMAL = "normal"
    DEGRADED_HIGH = "degraded_high"
    DEGRADED_CRITICAL = "degraded_critical"

    @property
    def degraded(self) -> bool:
        return self is not BudgetLevel.NORMAL


class EntityKind(str, Enum):
    """Discriminant for the EntityRef variant."""

    RESOURCE_NODE = "resource_node"
    CONSUMER_SITE = "consumer_site"
    ENERGY_SINK = "energy_sink"
    ENERGY_STORE = "energy_store"
    DROPPED_RESOURCE = "dropped_resource"
    CONTROLLER = "controller"
    DEPOT = "depot"
    AGENT = "agent"


class MoveResult(str, Enum):
    """Outcome of a movement request."""

    ARRIVED = "arrived"
    EN_ROUTE = "en_route"
    BLOCKED = "blocked"


class Action(str, Enum):
    """Interactions an agent can perform on a target."""

    HARVEST = "harvest"
    PICKUP = "pickup"
    WITHDRAW = "withdraw"
    TRANSFER = "transfer"
    DROP = "drop"
    BUILD = "build"
    REPAIR = "repair"
    UPGRADE = "upgrade"


class ActionResult(str, Enum):
    """Outcome of an interaction."""

    OK = "ok"
    NOT_IN_RANGE = "not_in_range"
    INVALID_TARGET = "invalid_target"
    FULL = "full"
    EMPTY = "empty"


@dataclass(frozen=True)
class EntityRef:
    """A resolved reference to something in the world.

    ``kind`` is the only field callers branch on. The remaining fields are
    filled according to the kind:

    - RESOURCE_NODE: ``amount`` is remaining yield, ``slots`` the number of
      simultaneous gatherers it supports
    - CONSUMER_SITE: ``progress``/``progress_total`` for construction,
      ``hits``/``hits_max`` for repair targets
    - ENERGY_SINK / ENERGY_STORE / DEPOT: ``amount`` stored, ``capacity``
    - DROPPED_RESOURCE: ``amount`` lying on the ground
    - AGENT: ``amount`` carried, ``capacity`` of its buffer
    """

    id: str
    kind: EntityKind
    position: Position
    structure_class: str = ""
    amount: int = 0
    capacity: int = 0
    slots: int = 0
    progress: int = 0
    progress_total: int = 0
    hits: int = 0
    hits_max: int = 0
    extra: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def free_capacity(self) -> int:
        return max(0, self.capacity - self.amount)

    @property
    def zone(self) -> str:
        return self.position.zone


class CachedTarget(NamedTuple):
    """A cached target reference with the position it was last seen at."""

    id: str
    position: Position


class AgentSighting(NamedTuple):
    """What the world reports about a live agent each cycle."""

    id: str
    role: Role
    zone: str
    position: Position
    carried: int
    capacity: int
    lifetime: int
