"""Builder: spends energy on construction sites and repairs."""

from colony.agents.base import RoleBehavior, as_cached, kind_ranker
from colony.schemas.models import BuilderRecord, BuilderState
from colony.schemas.types import (
    Action,
    ActionResult,
    AgentSighting,
    EntityKind,
    EntityRef,
    Role,
    Tier,
)

ENERGY_FACT = "targets.energy"
WORK_FACT = "targets.work"

# Construction order by structure class; repairs rank after every site.
SITE_ORDER = ("spawn", "extension", "tower", "container", "road")
_REPAIR_RANK = len(SITE_ORDER) + 1

ENERGY_KINDS = (EntityKind.ENERGY_STORE, EntityKind.DEPOT, EntityKind.DROPPED_RESOURCE)
energy_rank = kind_ranker(ENERGY_KINDS)


def has_energy(entity: EntityRef) -> bool:
    return entity.amount > 0


def refill_action(entity: EntityRef) -> Action:
    if entity.kind is EntityKind.DROPPED_RESOURCE:
        return Action.PICKUP
    return Action.WITHDRAW


def _is_site(entity: EntityRef) -> bool:
    return entity.progress_total > 0 and entity.progress < entity.progress_total


def _work_rank(entity: EntityRef) -> int:
    if _is_site(entity):
        try:
            return SITE_ORDER.index(entity.structure_class)
        except ValueError:
            return len(SITE_ORDER)
    return _REPAIR_RANK


class BuilderBehavior(RoleBehavior):
    """Builds sites by class priority, repairs next, upgrades as a last resort.

    A builder low on energy posts a market request so a transporter brings
    energy to its site, and also refills itself from stores when it can.
    """

    role = Role.BUILDER
    tier = Tier.LOW
    record_type = BuilderRecord

    def clear_targets(self, record: BuilderRecord) -> None:
        # The work site spans both states: it is the waiting spot and the
        # delivery hint while refilling, and is revalidated before reuse.
        record.source = None

    def _valid_work(self, entity: EntityRef) -> bool:
        if entity.kind is not EntityKind.CONSUMER_SITE:
            return False
        return _is_site(entity) or self.ctx.zones.needs_repair(entity)

    def step(self, record: BuilderRecord, body: AgentSighting) -> None:
        if record.state is BuilderState.BUILDING and body.carried == 0:
            self.transition(record, BuilderState.REFILLING)
        elif record.state is BuilderState.REFILLING and body.carried >= body.capacity:
            self.transition(record, BuilderState.BUILDING)

        self.update_request(
            record, body, self.ctx.settings.builder_request_priority, record.target
        )

        if record.state is BuilderState.REFILLING:
            self._refill(record, body)
        else:
            self._work(record, body)

    def _refill(self, record: BuilderRecord, body: AgentSighting) -> None:
        source = self.select_target(
            record, body, record.source, ENERGY_FACT, ENERGY_KINDS, has_energy, energy_rank
        )
        if source is None:
            record.source = None
            # Wait at the site for a delivery.
            site = self.reuse_target(record.target, self._valid_work)
            if site is not None:
                if not body.position.is_near(site.position):
                    self.move(body, site.position)
            else:
                self.idle(body)
            return

        record.source = as_cached(source)
        result = self.act(body, refill_action(source), source)
        if result in (ActionResult.EMPTY, ActionResult.INVALID_TARGET):
            record.source = None

    def _work(self, record: BuilderRecord, body: AgentSighting) -> None:
        target = self.select_target(
            record,
            body,
            record.target,
            WORK_FACT,
            (EntityKind.CONSUMER_SITE,),
            self._valid_work,
            _work_rank,
        )
        if target is None:
            record.target = None
            controller = self.controller(body.zone)
            if controller is not None:
                self.act(body, Action.UPGRADE, controller)
            else:
                self.idle(body)
            return

        record.target = as_cached(target)
        action = Action.BUILD if _is_site(target) else Action.REPAIR
        result = self.act(body, action, target)
        if result in (ActionResult.FULL, ActionResult.INVALID_TARGET):
            record.target = None
