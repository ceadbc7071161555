"""Transporter: moves energy from piles and stores to whoever needs it."""

from colony.agents.base import RoleBehavior, as_cached, kind_ranker
from colony.schemas.models import TransporterRecord, TransporterState
from colony.schemas.types import (
    Action,
    ActionResult,
    AgentSighting,
    EntityKind,
    EntityRef,
    Role,
    Tier,
)

PICKUP_FACT = "targets.pickup"
DELIVERY_FACT = "targets.delivery"

_PICKUP_KINDS = (EntityKind.DROPPED_RESOURCE, EntityKind.ENERGY_STORE, EntityKind.DEPOT)
_DELIVERY_KINDS = (EntityKind.ENERGY_SINK, EntityKind.ENERGY_STORE)

_pickup_rank = kind_ranker(_PICKUP_KINDS)


def _delivery_rank(entity: EntityRef) -> int:
    if entity.kind is EntityKind.ENERGY_SINK:
        return 1 if entity.structure_class == "tower" else 0
    return 2


class TransporterBehavior(RoleBehavior):
    """Collects energy and delivers it.

    Delivery order: spawns and extensions first, then the best market
    request, then towers and stores, and the zone controller when nothing
    else takes energy.
    """

    role = Role.TRANSPORTER
    tier = Tier.HIGH
    record_type = TransporterRecord

    def clear_targets(self, record: TransporterRecord) -> None:
        record.source = None
        record.target = None

    def step(self, record: TransporterRecord, body: AgentSighting) -> None:
        self._check_assignment(record, body)

        if record.state is TransporterState.COLLECTING and body.carried >= body.capacity:
            self.transition(record, TransporterState.DELIVERING)
        elif record.state is TransporterState.DELIVERING and body.carried == 0:
            self.transition(record, TransporterState.COLLECTING)

        if record.state is TransporterState.COLLECTING:
            self._collect(record, body)
        else:
            self._deliver(record, body)

    def _check_assignment(self, record: TransporterRecord, body: AgentSighting) -> None:
        """Drop an assignment whose requester is gone or full, or when empty."""
        request_id = record.assigned_request_id
        if request_id is None:
            return
        market = self.ctx.market
        request = market.get(request_id)
        requester = self.ctx.world.resolve(request_id)

        if requester is not None and requester.free_capacity == 0:
            market.clear_request(request_id)
        elif (
            request is None
            or requester is None
            or body.carried == 0
            or market.assignment_of(record.id) != request_id
        ):
            market.release(record.id)
        else:
            return
        record.assigned_request_id = None

    def _accepts_pickup(self, entity: EntityRef) -> bool:
        if entity.kind is EntityKind.DROPPED_RESOURCE:
            return entity.amount >= self.ctx.settings.min_pickup
        return entity.amount > 0

    def _accepts_delivery(self, entity: EntityRef) -> bool:
        if entity.kind is not EntityKind.ENERGY_SINK and entity.kind is not EntityKind.ENERGY_STORE:
            return False
        if entity.structure_class == "tower":
            return entity.free_capacity > entity.capacity * self.ctx.settings.tower_reserve_ratio
        return entity.free_capacity > 0

    def _collect(self, record: TransporterRecord, body: AgentSighting) -> None:
        source = self.select_target(
            record,
            body,
            record.source,
            PICKUP_FACT,
            _PICKUP_KINDS,
            self._accepts_pickup,
            _pickup_rank,
        )
        if source is None:
            record.source = None
            self.idle(body)
            return

        record.source = as_cached(source)
        action = Action.PICKUP if source.kind is EntityKind.DROPPED_RESOURCE else Action.WITHDRAW
        result = self.act(body, action, source)
        if result in (ActionResult.EMPTY, ActionResult.INVALID_TARGET):
            record.source = None

    def _deliver(self, record: TransporterRecord, body: AgentSighting) -> None:
        if record.assigned_request_id is not None:
            self._serve_request(record, body, record.assigned_request_id)
            return

        target = self.select_target(
            record,
            body,
            record.target,
            DELIVERY_FACT,
            _DELIVERY_KINDS,
            self._accepts_delivery,
            _delivery_rank,
        )
        if target is None or _delivery_rank(target) > 0:
            request_id = self.ctx.market.find_best_request_for(record.id, body.position, self.ctx.tick)
            if request_id is not None:
                record.assigned_request_id = request_id
                record.target = None
                self._serve_request(record, body, request_id)
                return

        if target is None:
            record.target = None
            controller = self.controller(body.zone)
            if controller is not None:
                self.act(body, Action.UPGRADE, controller)
            else:
                self.idle(body)
            return

        record.target = as_cached(target)
        result = self.act(body, Action.TRANSFER, target)
        if result is ActionResult.FULL:
            record.target = None

    def _serve_request(self, record: TransporterRecord, body: AgentSighting, request_id: str) -> None:
        requester = self.ctx.world.resolve(request_id)
        request = self.ctx.market.get(request_id)
        if requester is None or request is None:
            self.ctx.market.release(record.id)
            record.assigned_request_id = None
            return

        if not body.position.is_near(requester.position):
            # Head for the requester's work site until close, then the requester.
            meeting = requester.position
            if request.hint is not None and body.position.range_to(request.hint.position) > 3:
                meeting = request.hint.position
            self.move(body, meeting)
            return

        delivered = min(body.carried, requester.free_capacity)
        result = self.ctx.world.interact(body.id, Action.TRANSFER, requester.id, delivered)
        if result is ActionResult.OK:
            self.ctx.market.complete(request_id, record.id, delivered)
            record.assigned_request_id = None
            self._logger.debug(
                "Delivered to requester",
                agent_id=record.id,
                requester_id=request_id,
                delivered=delivered,
                tick=self.ctx.tick,
            )
        elif result is ActionResult.FULL:
            self.ctx.market.clear_request(request_id)
            record.assigned_request_id = None
