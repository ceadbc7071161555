"""Shared state machine framework for worker roles.

Each role is a stateless behavior object that steps an agent's record. Target
selection follows one cascade for every role, and each step returns an
entity or None:

1. reuse the agent's cached target if it still resolves and is valid;
2. walk the zone's cached ranked candidate list;
3. run a fresh world query if this agent's search cooldown has elapsed,
   rank by (class rank, distance), cache the list for the whole zone;
4. the caller falls back to the zone's idle position.

A fresh query happens at most once per cooldown window per agent, and the
zone-scoped list lets every other agent in the zone reuse its result.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, ClassVar

from colony.cache.world_facts import WorldFactsCache, fact_key
from colony.market.requests import RequestMarket
from colony.schemas.models import AgentRecord
from colony.schemas.types import (
    Action,
    ActionResult,
    AgentSighting,
    CachedTarget,
    EntityKind,
    EntityRef,
    MoveResult,
    Position,
    Role,
    Tier,
)
from colony.utils.telemetry import get_logger
from colony.world.interfaces import World
from colony.zone.manager import CONTROLLER_FACT, ZoneManager

Validity = Callable[[EntityRef], bool]
Ranker = Callable[[EntityRef], int]

IDLE_FACT = "idle_position"
AGENT_FACT_PREFIX = "agent."


def agent_fact(agent_id: str, name: str) -> str:
    """Fact name scoped to one agent; dropped when the agent vanishes."""
    return f"{AGENT_FACT_PREFIX}{agent_id}.{name}"


@dataclass
class AgentSettings:
    """Tunables shared by the role behaviors.

    Attributes:
        search_cooldown: Ticks between one agent's fresh world queries
        target_ttl: TTL of cached ranked candidate lists
        path_hint_budget: Tiles an agent may cover per move call
        release_lifetime: Gatherers release their node slot below this
        refill_threshold: Fraction of capacity below which consumers
            register a market request
        builder_request_priority: Priority of builder requests
        upgrader_request_priority: Priority of upgrader requests
        tower_reserve_ratio: Towers accept energy only above this free ratio
        min_pickup: Smallest dropped pile worth collecting
    """

    search_cooldown: int = 5
    target_ttl: float = 10
    path_hint_budget: int = 5
    release_lifetime: int = 30
    refill_threshold: float = 0.25
    builder_request_priority: float = 40.0
    upgrader_request_priority: float = 60.0
    tower_reserve_ratio: float = 0.2
    min_pickup: int = 10


@dataclass
class AgentContext:
    """Collaborators shared by every behavior during a cycle."""

    world: World
    cache: WorldFactsCache
    market: RequestMarket
    zones: ZoneManager
    settings: AgentSettings = field(default_factory=AgentSettings)
    tick: int = 0


def class_ranker(order: Sequence[str]) -> Ranker:
    """Rank entities by the position of their structure class in ``order``.

    Classes not listed rank after every listed class.
    """
    index = {name: i for i, name in enumerate(order)}
    return lambda entity: index.get(entity.structure_class, len(order))


def kind_ranker(order: Sequence[EntityKind]) -> Ranker:
    index = {kind: i for i, kind in enumerate(order)}
    return lambda entity: index.get(entity.kind, len(order))


def as_cached(entity: EntityRef) -> CachedTarget:
    return CachedTarget(entity.id, entity.position)


class RoleBehavior(ABC):
    """Base class for one role's state machine."""

    role: ClassVar[Role]
    tier: ClassVar[Tier]
    record_type: ClassVar[type[AgentRecord]]

    def __init__(self, ctx: AgentContext):
        self.ctx = ctx
        self._logger = get_logger(f"colony.agents.{self.role.value}")

    def create_record(self, sighting: AgentSighting, tick: int) -> AgentRecord:
        return self.record_type(
            id=sighting.id,
            home_zone=sighting.zone,
            lifetime=max(0, sighting.lifetime),
            registered_tick=tick,
        )

    @abstractmethod
    def step(self, record: Any, body: AgentSighting) -> None:
        """Advance one agent by one cycle."""
        ...

    @abstractmethod
    def clear_targets(self, record: Any) -> None:
        """Forget targets that only make sense in the current state."""
        ...

    def transition(self, record: Any, state: Any) -> bool:
        """Move to ``state``, invalidating state-scoped targets."""
        if record.state == state:
            return False
        self._logger.debug(
            "State transition",
            agent_id=record.id,
            from_state=record.state.value,
            to_state=state.value,
            tick=self.ctx.tick,
        )
        record.state = state
        self.clear_targets(record)
        return True

    def fallback(self, record: Any, body: AgentSighting) -> None:
        """Return to base for the rest of the cycle."""
        self.clear_targets(record)
        self.idle(body)

    # Target cascade

    def select_target(
        self,
        record: AgentRecord,
        body: AgentSighting,
        cached: CachedTarget | None,
        fact: str,
        kinds: Sequence[EntityKind],
        valid: Validity,
        rank: Ranker,
    ) -> EntityRef | None:
        """Run the target cascade; None means fall back to idling."""
        target = self.reuse_target(cached, valid)
        if target is None:
            target = self.ranked_target(body.zone, fact, valid)
        if target is None:
            target = self.query_target(record, body, fact, kinds, valid, rank)
        return target

    def reuse_target(self, cached: CachedTarget | None, valid: Validity) -> EntityRef | None:
        if cached is None:
            return None
        entity = self.ctx.world.resolve(cached.id)
        if entity is None or not valid(entity):
            return None
        return entity

    def ranked_target(self, zone_id: str, fact: str, valid: Validity) -> EntityRef | None:
        ranked, found = self.ctx.cache.get(fact_key(zone_id, fact))
        if not found:
            return None
        for candidate in ranked:
            entity = self.ctx.world.resolve(candidate.id)
            if entity is not None and valid(entity):
                return entity
        return None

    def search_allowed(self, record: AgentRecord) -> bool:
        last = record.last_search_tick
        return last is None or self.ctx.tick - last >= self.ctx.settings.search_cooldown

    def query_target(
        self,
        record: AgentRecord,
        body: AgentSighting,
        fact: str,
        kinds: Sequence[EntityKind],
        valid: Validity,
        rank: Ranker,
    ) -> EntityRef | None:
        if not self.search_allowed(record):
            return None
        record.last_search_tick = self.ctx.tick

        found: list[EntityRef] = []
        for kind in kinds:
            found.extend(self.ctx.world.query(body.zone, kind, valid))
        found.sort(key=lambda e: (rank(e), body.position.range_to(e.position), e.id))

        key = fact_key(body.zone, fact)
        self.ctx.cache.invalidate(key)
        self.ctx.cache.get_or_compute(
            key, lambda: [as_cached(e) for e in found], ttl=self.ctx.settings.target_ttl
        )
        return found[0] if found else None

    # Shared lookups

    def controller(self, zone_id: str) -> EntityRef | None:
        controllers = self.ctx.cache.get_or_compute(
            fact_key(zone_id, CONTROLLER_FACT),
            lambda: self.ctx.world.query(zone_id, EntityKind.CONTROLLER),
            ttl=self.ctx.zones.slow_ttl,
        )
        for controller in controllers:
            entity = self.ctx.world.resolve(controller.id)
            if entity is not None:
                return entity
        return None

    def idle_position(self, zone_id: str) -> Position | None:
        """The zone's waiting spot: its first depot, else its controller."""

        def compute() -> Position | None:
            for kind in (EntityKind.DEPOT, EntityKind.CONTROLLER):
                found = self.ctx.world.query(zone_id, kind)
                if found:
                    return min(found, key=lambda e: e.id).position
            return None

        return self.ctx.cache.get_or_compute(
            fact_key(zone_id, IDLE_FACT), compute, ttl=self.ctx.zones.slow_ttl
        )

    # Actions

    def move(self, body: AgentSighting, position: Position) -> MoveResult:
        return self.ctx.world.move_toward(body.id, position, self.ctx.settings.path_hint_budget)

    def act(
        self,
        body: AgentSighting,
        action: Action,
        target: EntityRef,
        amount: int | None = None,
    ) -> ActionResult:
        """Interact with a target, moving toward it when out of range."""
        result = self.ctx.world.interact(body.id, action, target.id, amount)
        if result is ActionResult.NOT_IN_RANGE:
            self.move(body, target.position)
        return result

    def idle(self, body: AgentSighting) -> None:
        position = self.idle_position(body.zone)
        if position is not None and not body.position.is_near(position):
            self.move(body, position)

    # Market

    def update_request(
        self,
        record: AgentRecord,
        body: AgentSighting,
        priority: float,
        hint: CachedTarget | None,
    ) -> None:
        """Keep this consumer's market request in line with its buffer.

        A request opens below the refill threshold, is refreshed while
        open, and is cleared once the buffer is full.
        """
        market = self.ctx.market
        if body.carried >= body.capacity:
            market.clear_request(record.id)
        elif (
            body.carried < body.capacity * self.ctx.settings.refill_threshold
            or market.get(record.id) is not None
        ):
            market.register_request(
                record.id,
                body.capacity - body.carried,
                priority,
                body.position,
                hint,
                tick=self.ctx.tick,
            )
