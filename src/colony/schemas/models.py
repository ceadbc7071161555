"""Pydantic models for persisted colony state and diagnostics."""

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from colony.schemas.types import BudgetLevel, CachedTarget, Position, Role


class GathererState(str, Enum):
    SEEKING = "seeking"
    EXTRACTING = "extracting"
    DELIVERING = "delivering"


class TransporterState(str, Enum):
    COLLECTING = "collecting"
    DELIVERING = "delivering"


class BuilderState(str, Enum):
    REFILLING = "refilling"
    BUILDING = "building"


class UpgraderState(str, Enum):
    REFILLING = "refilling"
    UPGRADING = "upgrading"


class AgentRecord(BaseModel):
    """Fields every role's record carries."""

    id: str = Field(..., min_length=1, description="Agent identifier")
    home_zone: str = Field(..., description="Zone the agent belongs to")
    lifetime: int = Field(0, ge=0, description="Remaining lifetime estimate")
    last_search_tick: int | None = Field(
        None, description="Tick of this agent's last fresh world query"
    )
    registered_tick: int = Field(0, description="Tick the agent was first sighted")

    model_config = ConfigDict(extra="forbid")


class GathererRecord(AgentRecord):
    role: Literal[Role.GATHERER] = Role.GATHERER
    state: GathererState = GathererState.SEEKING
    node: CachedTarget | None = Field(None, description="Bound resource node")
    depot_id: str | None = Field(
        None, description="Depot next to the node, '' when the node has none"
    )
    delivery_target: CachedTarget | None = None


class TransporterRecord(AgentRecord):
    role: Literal[Role.TRANSPORTER] = Role.TRANSPORTER
    state: TransporterState = TransporterState.COLLECTING
    source: CachedTarget | None = Field(None, description="Where energy is collected")
    target: CachedTarget | None = Field(None, description="Where energy is delivered")
    assigned_request_id: str | None = Field(
        None, description="Market request this transporter is fulfilling"
    )


class BuilderRecord(AgentRecord):
    role: Literal[Role.BUILDER] = Role.BUILDER
    state: BuilderState = BuilderState.REFILLING
    source: CachedTarget | None = None
    target: CachedTarget | None = None


class UpgraderRecord(AgentRecord):
    role: Literal[Role.UPGRADER] = Role.UPGRADER
    state: UpgraderState = UpgraderState.REFILLING
    source: CachedTarget | None = None
    controller: CachedTarget | None = None


AnyAgentRecord = Annotated[
    Union[GathererRecord, TransporterRecord, BuilderRecord, UpgraderRecord],
    Field(discriminator="role"),
]


class ResourceRequest(BaseModel):
    """An open ask for delivery of a resource."""

    requester_id: str = Field(..., min_length=1)
    position: Position
    amount: int = Field(..., ge=0, description="Units still needed")
    priority: float = Field(..., description="Lower is more urgent")
    created_tick: int
    wait_start_tick: int
    hint: CachedTarget | None = Field(
        None, description="Site the requester is working at, a meeting point"
    )
    assigned_fulfiller: str | None = None

    @property
    def request_id(self) -> str:
        return self.requester_id

    @property
    def zone(self) -> str:
        return self.position.zone


class ResourceNodeRecord(BaseModel):
    """A resource node and its gatherer assignment counter."""

    id: str
    position: Position
    slots: int = Field(..., ge=0, description="Maximum simultaneous gatherers")
    assigned: int = Field(0, ge=0, description="Gatherers currently bound")
    remaining_yield: int = 0

    @property
    def full(self) -> bool:
        return self.assigned >= self.slots


class Diagnostics(BaseModel):
    """Counters exported once per cycle for external logging."""

    tick: int = Field(..., description="Tick of the last completed cycle")
    cycles: int = Field(..., description="Number of cycles run")
    budget_level: BudgetLevel = Field(..., description="Current budget level")
    reserve: float = Field(..., description="Reserve reported for the last cycle")
    mean_utilization: float = Field(..., description="Rolling mean used/limit")
    tier_usage: dict[str, float] = Field(
        default_factory=dict, description="Compute charged per tier last cycle"
    )
    open_requests: int = Field(..., description="Open requests across all zones")
    agents: int = Field(..., description="Registered agents")
    cache_hits: int = 0
    cache_misses: int = 0
    durable_writes: int = Field(0, description="Writes performed by the last flush")
    recent_errors: list[str] = Field(default_factory=list)
