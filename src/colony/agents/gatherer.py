"""Gatherer: static extraction at a bound resource node."""

from colony.agents.base import RoleBehavior, as_cached, class_ranker
from colony.cache.world_facts import fact_key
from colony.schemas.models import GathererRecord, GathererState
from colony.schemas.types import (
    Action,
    ActionResult,
    AgentSighting,
    EntityKind,
    EntityRef,
    Role,
    Tier,
)

SINKS_FACT = "targets.sinks"

_sink_rank = class_ranker(("spawn", "extension", "tower"))


def _accepts_energy(entity: EntityRef) -> bool:
    return entity.kind is EntityKind.ENERGY_SINK and entity.free_capacity > 0


class GathererBehavior(RoleBehavior):
    """Binds to the least-loaded node, extracts, and unloads beside it.

    A full gatherer transfers into a depot next to its node or drops the
    load on the ground for transporters. Close to the end of its lifetime it
    gives up its node slot so a replacement can bind while it finishes.
    """

    role = Role.GATHERER
    tier = Tier.CRITICAL
    record_type = GathererRecord

    def clear_targets(self, record: GathererRecord) -> None:
        record.delivery_target = None

    def step(self, record: GathererRecord, body: AgentSighting) -> None:
        if body.lifetime < self.ctx.settings.release_lifetime and self.ctx.zones.release_node(
            record.id
        ):
            self._logger.debug(
                "Released node before expiry",
                agent_id=record.id,
                lifetime=body.lifetime,
                tick=self.ctx.tick,
            )

        node = self._node(record, body)
        if node is None:
            self.transition(record, GathererState.SEEKING)
            if body.carried > 0:
                self._deliver_without_node(record, body)
            else:
                self.idle(body)
            return

        if body.carried >= body.capacity:
            self.transition(record, GathererState.DELIVERING)
        elif body.carried == 0 or record.state is GathererState.SEEKING:
            self.transition(record, GathererState.EXTRACTING)

        if record.state is GathererState.DELIVERING:
            self._unload(record, body, node)
        else:
            self.act(body, Action.HARVEST, node)

    def _node(self, record: GathererRecord, body: AgentSighting) -> EntityRef | None:
        zones = self.ctx.zones
        dying = body.lifetime < self.ctx.settings.release_lifetime
        if record.node is not None:
            node = self.ctx.world.resolve(record.node.id)
            if node is not None and (
                dying
                or zones.node_of(record.id) is not None
                or zones.bind_node(record.id, node.zone, node.id)
            ):
                return node
            zones.release_node(record.id)
            record.node = None
            record.depot_id = None

        if dying:
            return None
        bound = zones.assign_node(record.id, body.zone)
        if bound is None:
            return None
        node = self.ctx.world.resolve(bound.id)
        if node is None:
            zones.release_node(record.id)
            return None
        record.node = as_cached(node)
        record.depot_id = None
        return node

    def _depot(self, record: GathererRecord, node: EntityRef) -> EntityRef | None:
        if record.depot_id is None:
            depots = self.ctx.cache.get_or_compute(
                fact_key(node.zone, f"depot.{node.id}"),
                lambda: [
                    as_cached(e)
                    for e in self.ctx.world.query(
                        node.zone, EntityKind.DEPOT, lambda d: d.position.is_near(node.position)
                    )
                ],
                ttl=self.ctx.zones.slow_ttl,
            )
            record.depot_id = depots[0].id if depots else ""

        if not record.depot_id:
            return None
        depot = self.ctx.world.resolve(record.depot_id)
        if depot is None:
            record.depot_id = None
        return depot

    def _unload(self, record: GathererRecord, body: AgentSighting, node: EntityRef) -> None:
        depot = self._depot(record, node)
        if depot is not None and depot.free_capacity > 0:
            result = self.act(body, Action.TRANSFER, depot)
            if result is not ActionResult.FULL:
                return
        self.ctx.world.interact(body.id, Action.DROP, None)

    def _deliver_without_node(self, record: GathererRecord, body: AgentSighting) -> None:
        target = self.select_target(
            record,
            body,
            record.delivery_target,
            SINKS_FACT,
            (EntityKind.ENERGY_SINK,),
            _accepts_energy,
            _sink_rank,
        )
        if target is None:
            record.delivery_target = None
            controller = self.controller(body.zone)
            if controller is not None:
                self.act(body, Action.UPGRADE, controller)
            else:
                self.idle(body)
            return

        record.delivery_target = as_cached(target)
        self.act(body, Action.TRANSFER, target)
