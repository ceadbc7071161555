"""In-memory grid world implementing the host interfaces.

Used by the test suite and by ``colony simulate``. Movement is one tile per
call along the Chebyshev diagonal, interactions need range 1 except
``UPGRADE`` which reaches 3. There is no terrain other than optional walls.
"""

from dataclasses import dataclass, replace
from typing import Any

from colony.schemas.types import (
    Action,
    ActionResult,
    AgentSighting,
    EntityKind,
    EntityRef,
    MoveResult,
    Position,
    Role,
)
from colony.utils.telemetry import get_logger
from colony.world.interfaces import EntityPredicate

_UPGRADE_RANGE = 3
_HARVEST_PER_WORK = 2
_BUILD_PER_WORK = 5
_REPAIR_HITS_PER_ENERGY = 100

_STORAGE_KINDS = (EntityKind.ENERGY_SINK, EntityKind.ENERGY_STORE, EntityKind.DEPOT)


@dataclass
class Body:
    """A live agent's physical state."""

    id: str
    role: Role
    position: Position
    capacity: int = 50
    carried: int = 0
    lifetime: int = 1500
    work: int = 2

    @property
    def free(self) -> int:
        return self.capacity - self.carried

    def sighting(self) -> AgentSighting:
        return AgentSighting(
            id=self.id,
            role=self.role,
            zone=self.position.zone,
            position=self.position,
            carried=self.carried,
            capacity=self.capacity,
            lifetime=self.lifetime,
        )

    def ref(self) -> EntityRef:
        return EntityRef(
            id=self.id,
            kind=EntityKind.AGENT,
            position=self.position,
            structure_class=self.role.value,
            amount=self.carried,
            capacity=self.capacity,
        )


class GridWorld:
    """A small deterministic world of zones, entities and agents."""

    def __init__(self, zones: list[str] | None = None, regen_interval: int = 300):
        """Initialize world.

        Args:
            zones: Zone ids that are visible from the start
            regen_interval: Ticks between resource node refills
        """
        self.tick = 0
        self.regen_interval = regen_interval
        self._zones: list[str] = list(zones or [])
        self._entities: dict[str, EntityRef] = {}
        self._bodies: dict[str, Body] = {}
        self._walls: set[Position] = set()
        self._node_yield: dict[str, int] = {}
        self._dropped_seq = 0
        self.queries = 0
        self._logger = get_logger("colony.world.grid")

    # Setup

    def add_zone(self, zone_id: str) -> None:
        if zone_id not in self._zones:
            self._zones.append(zone_id)

    def remove_zone(self, zone_id: str) -> None:
        """Hide a zone together with everything in it."""
        self._zones = [z for z in self._zones if z != zone_id]
        for entity_id in [e.id for e in self._entities.values() if e.zone == zone_id]:
            del self._entities[entity_id]
        for agent_id in [b.id for b in self._bodies.values() if b.position.zone == zone_id]:
            del self._bodies[agent_id]

    def add_entity(self, entity: EntityRef) -> EntityRef:
        self.add_zone(entity.zone)
        self._entities[entity.id] = entity
        if entity.kind is EntityKind.RESOURCE_NODE:
            self._node_yield[entity.id] = entity.capacity or entity.amount
        return entity

    def remove_entity(self, entity_id: str) -> None:
        self._entities.pop(entity_id, None)

    def update_entity(self, entity_id: str, **changes: Any) -> EntityRef:
        entity = replace(self._entities[entity_id], **changes)
        self._entities[entity_id] = entity
        return entity

    def add_wall(self, position: Position) -> None:
        self._walls.add(position)

    def add_agent(
        self,
        agent_id: str,
        role: Role,
        position: Position,
        capacity: int = 50,
        carried: int = 0,
        lifetime: int = 1500,
        work: int = 2,
    ) -> Body:
        self.add_zone(position.zone)
        body = Body(agent_id, role, position, capacity, carried, lifetime, work)
        self._bodies[agent_id] = body
        return body

    def remove_agent(self, agent_id: str) -> None:
        self._bodies.pop(agent_id, None)

    def body(self, agent_id: str) -> Body | None:
        return self._bodies.get(agent_id)

    # Census

    def agents(self) -> list[AgentSighting]:
        return [b.sighting() for b in self._bodies.values()]

    def zones(self) -> list[str]:
        return list(self._zones)

    # Query

    def query(
        self,
        zone_id: str,
        category: EntityKind,
        predicate: EntityPredicate | None = None,
    ) -> list[EntityRef]:
        self.queries += 1
        if category is EntityKind.AGENT:
            found = [b.ref() for b in self._bodies.values() if b.position.zone == zone_id]
        else:
            found = [
                e for e in self._entities.values() if e.zone == zone_id and e.kind is category
            ]
        if predicate is not None:
            found = [e for e in found if predicate(e)]
        return found

    def resolve(self, entity_id: str) -> EntityRef | None:
        body = self._bodies.get(entity_id)
        if body is not None:
            return body.ref()
        return self._entities.get(entity_id)

    # Movement

    def move_toward(
        self, agent_id: str, position: Position, path_hint_budget: int
    ) -> MoveResult:
        body = self._bodies.get(agent_id)
        if body is None or body.position.zone != position.zone or path_hint_budget <= 0:
            return MoveResult.BLOCKED
        if body.position.range_to(position) <= 1:
            return MoveResult.ARRIVED

        x, y, zone = body.position
        step = Position(
            x + _sign(position.x - x),
            y + _sign(position.y - y),
            zone,
        )
        if step in self._walls:
            return MoveResult.BLOCKED
        body.position = step
        if step.range_to(position) <= 1:
            return MoveResult.ARRIVED
        return MoveResult.EN_ROUTE

    # Interaction

    def interact(
        self,
        agent_id: str,
        action: Action,
        target_id: str | None,
        amount: int | None = None,
    ) -> ActionResult:
        body = self._bodies.get(agent_id)
        if body is None:
            return ActionResult.INVALID_TARGET

        if action is Action.DROP:
            return self._drop(body, amount)

        target = self.resolve(target_id) if target_id is not None else None
        if target is None:
            return ActionResult.INVALID_TARGET

        reach = _UPGRADE_RANGE if action is Action.UPGRADE else 1
        if body.position.range_to(target.position) > reach:
            return ActionResult.NOT_IN_RANGE

        handler = {
            Action.HARVEST: self._harvest,
            Action.PICKUP: self._pickup,
            Action.WITHDRAW: self._withdraw,
            Action.TRANSFER: self._transfer,
            Action.BUILD: self._build,
            Action.REPAIR: self._repair,
            Action.UPGRADE: self._upgrade,
        }[action]
        return handler(body, target, amount)

    def _harvest(self, body: Body, node: EntityRef, amount: int | None) -> ActionResult:
        if node.kind is not EntityKind.RESOURCE_NODE:
            return ActionResult.INVALID_TARGET
        if node.amount <= 0:
            return ActionResult.EMPTY
        if body.free <= 0:
            return ActionResult.FULL
        taken = min(body.work * _HARVEST_PER_WORK, node.amount, body.free)
        body.carried += taken
        self.update_entity(node.id, amount=node.amount - taken)
        return ActionResult.OK

    def _pickup(self, body: Body, drop: EntityRef, amount: int | None) -> ActionResult:
        if drop.kind is not EntityKind.DROPPED_RESOURCE:
            return ActionResult.INVALID_TARGET
        if body.free <= 0:
            return ActionResult.FULL
        taken = min(drop.amount, body.free)
        body.carried += taken
        if drop.amount - taken <= 0:
            self.remove_entity(drop.id)
        else:
            self.update_entity(drop.id, amount=drop.amount - taken)
        return ActionResult.OK

    def _withdraw(self, body: Body, store: EntityRef, amount: int | None) -> ActionResult:
        if store.kind not in _STORAGE_KINDS:
            return ActionResult.INVALID_TARGET
        if store.amount <= 0:
            return ActionResult.EMPTY
        if body.free <= 0:
            return ActionResult.FULL
        taken = min(store.amount, body.free, amount if amount is not None else body.free)
        body.carried += taken
        self.update_entity(store.id, amount=store.amount - taken)
        return ActionResult.OK

    def _transfer(self, body: Body, target: EntityRef, amount: int | None) -> ActionResult:
        if body.carried <= 0:
            return ActionResult.EMPTY
        if target.kind is EntityKind.AGENT:
            receiver = self._bodies[target.id]
            free = receiver.free
        elif target.kind in _STORAGE_KINDS:
            receiver = None
            free = target.free_capacity
        else:
            return ActionResult.INVALID_TARGET
        if free <= 0:
            return ActionResult.FULL

        given = min(body.carried, free, amount if amount is not None else body.carried)
        body.carried -= given
        if receiver is not None:
            receiver.carried += given
        else:
            self.update_entity(target.id, amount=target.amount + given)
        return ActionResult.OK

    def _drop(self, body: Body, amount: int | None) -> ActionResult:
        if body.carried <= 0:
            return ActionResult.EMPTY
        given = min(body.carried, amount if amount is not None else body.carried)
        body.carried -= given
        for entity in self._entities.values():
            if entity.kind is EntityKind.DROPPED_RESOURCE and entity.position == body.position:
                self.update_entity(entity.id, amount=entity.amount + given)
                return ActionResult.OK
        self._dropped_seq += 1
        self.add_entity(
            EntityRef(
                id=f"drop-{self._dropped_seq}",
                kind=EntityKind.DROPPED_RESOURCE,
                position=body.position,
                amount=given,
            )
        )
        return ActionResult.OK

    def _build(self, body: Body, site: EntityRef, amount: int | None) -> ActionResult:
        if site.kind is not EntityKind.CONSUMER_SITE or site.progress_total <= 0:
            return ActionResult.INVALID_TARGET
        if body.carried <= 0:
            return ActionResult.EMPTY
        spent = min(body.carried, body.work * _BUILD_PER_WORK, site.progress_total - site.progress)
        body.carried -= spent
        progress = site.progress + spent
        if progress >= site.progress_total:
            self._complete_site(site)
        else:
            self.update_entity(site.id, progress=progress)
        return ActionResult.OK

    def _complete_site(self, site: EntityRef) -> None:
        self.remove_entity(site.id)
        completes_to = site.extra.get("completes_to")
        if completes_to is None:
            return
        self.add_entity(
            EntityRef(
                id=site.id,
                kind=EntityKind(completes_to),
                position=site.position,
                structure_class=site.structure_class,
                capacity=site.extra.get("capacity", 0),
            )
        )
        self._logger.debug("Site completed", site_id=site.id, tick=self.tick)

    def _repair(self, body: Body, site: EntityRef, amount: int | None) -> ActionResult:
        if site.kind is not EntityKind.CONSUMER_SITE or site.hits_max <= 0:
            return ActionResult.INVALID_TARGET
        if site.hits >= site.hits_max:
            return ActionResult.FULL
        if body.carried <= 0:
            return ActionResult.EMPTY
        missing = -(-(site.hits_max - site.hits) // _REPAIR_HITS_PER_ENERGY)
        spent = min(body.carried, body.work, missing)
        body.carried -= spent
        self.update_entity(
            site.id, hits=min(site.hits_max, site.hits + spent * _REPAIR_HITS_PER_ENERGY)
        )
        return ActionResult.OK

    def _upgrade(self, body: Body, controller: EntityRef, amount: int | None) -> ActionResult:
        if controller.kind is not EntityKind.CONTROLLER:
            return ActionResult.INVALID_TARGET
        if body.carried <= 0:
            return ActionResult.EMPTY
        spent = min(body.carried, body.work)
        body.carried -= spent
        self.update_entity(controller.id, progress=controller.progress + spent)
        return ActionResult.OK

    # Time

    def advance(self) -> list[str]:
        """Move to the next tick: age agents, refill nodes.

        Returns:
            Ids of agents that expired this tick
        """
        self.tick += 1
        expired = []
        for body in list(self._bodies.values()):
            body.lifetime -= 1
            if body.lifetime <= 0:
                expired.append(body.id)
                del self._bodies[body.id]

        if self.regen_interval and self.tick % self.regen_interval == 0:
            for node_id, full in self._node_yield.items():
                if node_id in self._entities:
                    self.update_entity(node_id, amount=full)
        return expired


def _sign(value: int) -> int:
    return (value > 0) - (value < 0)


def demo_world(zone_id: str = "W1N1") -> GridWorld:
    """A single-zone starter colony: two nodes, a depot beside each, a
    spawn, a controller, one construction site and one agent per role."""
    world = GridWorld([zone_id])

    def at(x: int, y: int) -> Position:
        return Position(x, y, zone_id)

    world.add_entity(
        EntityRef("node-a", EntityKind.RESOURCE_NODE, at(5, 5), amount=3000, capacity=3000, slots=2)
    )
    world.add_entity(
        EntityRef("node-b", EntityKind.RESOURCE_NODE, at(30, 8), amount=3000, capacity=3000, slots=1)
    )
    world.add_entity(EntityRef("depot-a", EntityKind.DEPOT, at(6, 6), capacity=2000))
    world.add_entity(EntityRef("depot-b", EntityKind.DEPOT, at(29, 9), capacity=2000))
    world.add_entity(
        EntityRef("spawn-1", EntityKind.ENERGY_SINK, at(15, 15), structure_class="spawn", capacity=300)
    )
    world.add_entity(
        EntityRef(
            "ctrl-1",
            EntityKind.CONTROLLER,
            at(20, 25),
            progress_total=200_000,
            extra={"level": 2},
        )
    )
    world.add_entity(
        EntityRef(
            "site-1",
            EntityKind.CONSUMER_SITE,
            at(12, 18),
            structure_class="extension",
            progress_total=300,
            extra={"completes_to": EntityKind.ENERGY_SINK.value, "capacity": 50},
        )
    )

    world.add_agent("gatherer-1", Role.GATHERER, at(10, 10), work=5)
    world.add_agent("gatherer-2", Role.GATHERER, at(25, 10), work=5)
    world.add_agent("transporter-1", Role.TRANSPORTER, at(15, 14), capacity=100)
    world.add_agent("upgrader-1", Role.UPGRADER, at(19, 22))
    world.add_agent("builder-1", Role.BUILDER, at(13, 16))
    return world
