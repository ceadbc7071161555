"""Upgrader: feeds the zone controller."""

from colony.agents.base import RoleBehavior, agent_fact, as_cached
from colony.agents.builder import ENERGY_FACT, ENERGY_KINDS, energy_rank, has_energy, refill_action
from colony.cache.world_facts import fact_key
from colony.schemas.models import UpgraderRecord, UpgraderState
from colony.schemas.types import (
    Action,
    ActionResult,
    AgentSighting,
    EntityKind,
    EntityRef,
    Role,
    Tier,
)

NEARBY_STORES = "nearby_stores"
NEARBY_RANGE = 5
NEARBY_TTL = 50


class UpgraderBehavior(RoleBehavior):
    role = Role.UPGRADER
    tier = Tier.MEDIUM
    record_type = UpgraderRecord

    def clear_targets(self, record: UpgraderRecord) -> None:
        record.source = None

    def step(self, record: UpgraderRecord, body: AgentSighting) -> None:
        if record.state is UpgraderState.UPGRADING and body.carried == 0:
            self.transition(record, UpgraderState.REFILLING)
        elif record.state is UpgraderState.REFILLING and body.carried >= body.capacity:
            self.transition(record, UpgraderState.UPGRADING)

        controller = self.reuse_target(record.controller, lambda e: True)
        if controller is None:
            controller = self.controller(body.zone)
            record.controller = as_cached(controller) if controller is not None else None

        self.update_request(
            record, body, self.ctx.settings.upgrader_request_priority, record.controller
        )

        if record.state is UpgraderState.UPGRADING:
            if controller is not None:
                self.act(body, Action.UPGRADE, controller)
            else:
                self.idle(body)
            return

        source = self._nearby_store(record, body)
        if source is None:
            source = self.select_target(
                record, body, record.source, ENERGY_FACT, ENERGY_KINDS, has_energy, energy_rank
            )
        if source is None:
            record.source = None
            if controller is not None and not body.position.is_near(controller.position, 3):
                self.move(body, controller.position)
            return

        record.source = as_cached(source)
        result = self.act(body, refill_action(source), source)
        if result in (ActionResult.EMPTY, ActionResult.INVALID_TARGET):
            record.source = None

    def _nearby_store(self, record: UpgraderRecord, body: AgentSighting) -> EntityRef | None:
        """A well-stocked store close to this upgrader, rechecked every few dozen ticks."""
        wanted = (body.capacity - body.carried) // 2

        def stocked(entity: EntityRef) -> bool:
            return entity.amount > wanted and entity.position.is_near(body.position, NEARBY_RANGE)

        nearby = self.ctx.cache.get_or_compute(
            fact_key(body.zone, agent_fact(record.id, NEARBY_STORES)),
            lambda: [
                as_cached(e) for e in self.ctx.world.query(body.zone, EntityKind.ENERGY_STORE, stocked)
            ],
            ttl=NEARBY_TTL,
        )
        for candidate in nearby:
            entity = self.ctx.world.resolve(candidate.id)
            if entity is not None and entity.amount > wanted:
                return entity
        return None
