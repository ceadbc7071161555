"""Request market matching transporters to open resource requests.

Consumers register a request when their buffer runs low; a fulfiller asks
for its best request and is assigned to it in the same call. Scores combine
priority, distance and a capped wait bonus so a long-waiting request
eventually overtakes fresher, more urgent ones, but only within the cap.
"""

import math
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from colony.schemas.models import ResourceRequest
from colony.schemas.types import CachedTarget, Position
from colony.utils.telemetry import (
    get_logger,
    record_open_requests,
    record_request_match,
    record_request_removal,
)


@dataclass
class MarketPolicy:
    """Scoring and expiry configuration for the request market.

    Attributes:
        distance_weight: Score added per tile between fulfiller and requester
        wait_rate: Wait bonus gained per tick of waiting
        wait_grace: Ticks of waiting before any bonus accrues
        wait_cap: Maximum wait bonus
        stale_timeout: Age past which a request is dropped
    """

    distance_weight: float = 0.5
    wait_rate: float = 2.0
    wait_grace: int = 0
    wait_cap: float = 60.0
    stale_timeout: int = 50


class RequestMarket:
    """Registry of open requests with single-fulfiller assignment.

    A request is keyed by its requester, so each requester has at most one
    open request. The market keeps both directions of every assignment
    (request to fulfiller and fulfiller to request) and changes them
    together.
    """

    def __init__(self, policy: MarketPolicy | None = None):
        self.policy = policy or MarketPolicy()
        self._requests: dict[str, ResourceRequest] = {}
        self._assignments: dict[str, str] = {}
        self._logger = get_logger("colony.market")

    def register_request(
        self,
        requester_id: str,
        amount: int,
        priority: float,
        position: Position,
        hint: CachedTarget | None = None,
        *,
        tick: int,
    ) -> ResourceRequest:
        """Open a request or refresh the requester's existing one.

        Refreshing keeps the creation and wait-start ticks and any
        assignment, so re-registering every cycle does not reset the wait.

        Args:
            requester_id: Requesting agent
            amount: Units needed
            priority: Priority score, lower is more urgent
            position: Requester position
            hint: Site the requester is working at
            tick: Current tick

        Returns:
            The open request
        """
        existing = self._requests.get(requester_id)
        if existing is not None:
            existing.amount = amount
            existing.priority = priority
            existing.position = position
            existing.hint = hint
            return existing

        request = ResourceRequest(
            requester_id=requester_id,
            position=position,
            amount=amount,
            priority=priority,
            created_tick=tick,
            wait_start_tick=tick,
            hint=hint,
        )
        self._requests[requester_id] = request
        self._logger.debug(
            "Registered request",
            requester_id=requester_id,
            zone=position.zone,
            amount=amount,
            priority=priority,
            tick=tick,
        )
        self._publish(position.zone)
        return request

    def clear_request(self, requester_id: str) -> bool:
        """Remove the requester's open request and its assignment."""
        return self._remove(requester_id, "cleared")

    def get(self, request_id: str) -> ResourceRequest | None:
        return self._requests.get(request_id)

    def requests(self, zone: str | None = None) -> list[ResourceRequest]:
        if zone is None:
            return list(self._requests.values())
        return [r for r in self._requests.values() if r.zone == zone]

    def open_count(self, zone: str | None = None) -> int:
        return len(self.requests(zone))

    def assignment_of(self, fulfiller_id: str) -> str | None:
        """Request currently assigned to a fulfiller."""
        return self._assignments.get(fulfiller_id)

    def wait_bonus(self, age: int) -> float:
        """Bonus subtracted from the score of a request waiting ``age`` ticks."""
        p = self.policy
        return min(p.wait_cap, p.wait_rate * max(0, age - p.wait_grace))

    def score(self, request: ResourceRequest, position: Position, tick: int) -> float:
        """Score a request for a fulfiller at ``position``; lower wins."""
        distance = position.range_to(request.position)
        return (
            request.priority
            + self.policy.distance_weight * distance
            - self.wait_bonus(tick - request.wait_start_tick)
        )

    def starvation_age(self, priority_gap: float) -> int | None:
        """Smallest age at which the wait bonus exceeds ``priority_gap``.

        Returns:
            Age in ticks, or None if the cap never lets the bonus get there
        """
        p = self.policy
        if priority_gap < 0:
            return 0
        if p.wait_cap <= priority_gap or p.wait_rate <= 0:
            return None
        return p.wait_grace + math.floor(priority_gap / p.wait_rate) + 1

    def find_best_request_for(
        self, fulfiller_id: str, position: Position, tick: int
    ) -> str | None:
        """Match a fulfiller to its best request in its zone and assign it.

        Candidates are open requests in the fulfiller's zone that are either
        unassigned or already assigned to this fulfiller. Ties go to the
        older request, then to the lower requester id, so repeated calls on
        an unchanged market return the same id.

        Args:
            fulfiller_id: Agent looking for work
            position: Fulfiller position
            tick: Current tick

        Returns:
            Id of the assigned request, or None when nothing is open
        """
        best: tuple[float, int, str] | None = None
        for request in self._requests.values():
            if request.zone != position.zone:
                continue
            if request.assigned_fulfiller not in (None, fulfiller_id):
                continue
            key = (self.score(request, position, tick), request.created_tick, request.requester_id)
            if best is None or key < best:
                best = key

        if best is None:
            return None

        request_id = best[2]
        current = self._assignments.get(fulfiller_id)
        if current != request_id:
            if current is not None:
                self.release(fulfiller_id)
            self._requests[request_id].assigned_fulfiller = fulfiller_id
            self._assignments[fulfiller_id] = request_id
            record_request_match(position.zone)
            self._logger.debug(
                "Assigned request",
                request_id=request_id,
                fulfiller_id=fulfiller_id,
                score=round(best[0], 2),
                tick=tick,
            )
        return request_id

    def release(self, fulfiller_id: str) -> str | None:
        """Drop a fulfiller's assignment; the request stays open.

        Returns:
            Id of the released request, None if it held none
        """
        request_id = self._assignments.pop(fulfiller_id, None)
        if request_id is None:
            return None
        request = self._requests.get(request_id)
        if request is not None and request.assigned_fulfiller == fulfiller_id:
            request.assigned_fulfiller = None
        return request_id

    def complete(self, requester_id: str, fulfiller_id: str, delivered: int) -> bool:
        """Account a delivery made by a fulfiller.

        A delivery that covers the outstanding amount closes the request.
        A partial delivery reduces the amount and frees the request for the
        next match.

        Returns:
            True if the request was closed
        """
        request = self._requests.get(requester_id)
        if request is None:
            self.release(fulfiller_id)
            return False

        remaining = request.amount - delivered
        if remaining <= 0:
            self._remove(requester_id, "fulfilled")
            return True

        request.amount = remaining
        self.release(fulfiller_id)
        return False

    def remove_agent(self, agent_id: str) -> None:
        """Forget everything held by or for a vanished agent."""
        self.release(agent_id)
        self._remove(agent_id, "requester_gone")

    def validate(
        self,
        tick: int,
        requester_alive: Callable[[str], bool],
        requester_needs: Callable[[str], bool],
        fulfiller_assignment: Callable[[str], str | None],
    ) -> int:
        """Per-cycle consistency pass.

        Removes requests whose requester is gone, no longer needs energy or
        which outlived ``stale_timeout``. Clears assignments whose fulfiller
        is gone or no longer points back at the request.

        Args:
            tick: Current tick
            requester_alive: Whether a requester still exists
            requester_needs: Whether a requester still needs delivery
            fulfiller_assignment: Request a fulfiller believes it is serving,
                None if the fulfiller is gone

        Returns:
            Number of requests removed
        """
        removed = 0
        for request_id, request in list(self._requests.items()):
            if not requester_alive(request_id):
                reason = "requester_gone"
            elif not requester_needs(request_id):
                reason = "satisfied"
            elif tick - request.created_tick > self.policy.stale_timeout:
                reason = "stale"
            else:
                reason = None

            if reason is not None:
                self._remove(request_id, reason)
                removed += 1
                continue

            fulfiller = request.assigned_fulfiller
            if fulfiller is not None and fulfiller_assignment(fulfiller) != request_id:
                self._logger.debug(
                    "Clearing orphaned assignment",
                    request_id=request_id,
                    fulfiller_id=fulfiller,
                    tick=tick,
                )
                request.assigned_fulfiller = None
                if self._assignments.get(fulfiller) == request_id:
                    del self._assignments[fulfiller]

        for zone in {r.zone for r in self._requests.values()}:
            self._publish(zone)
        return removed

    def snapshot(self, zone: str) -> dict[str, dict[str, Any]]:
        """JSON-ready copy of a zone's open requests."""
        return {
            r.requester_id: r.model_dump(mode="json")
            for r in self._requests.values()
            if r.zone == zone
        }

    def restore(self, data: dict[str, dict[str, Any]]) -> int:
        """Load requests from a snapshot, rebuilding the assignment index.

        Returns:
            Number of requests restored
        """
        restored = 0
        for request_id, raw in data.items():
            request = ResourceRequest.model_validate(raw)
            fulfiller = request.assigned_fulfiller
            if fulfiller is not None and fulfiller in self._assignments:
                request.assigned_fulfiller = None
            self._requests[request_id] = request
            if request.assigned_fulfiller is not None:
                self._assignments[request.assigned_fulfiller] = request_id
            restored += 1
        return restored

    def _remove(self, request_id: str, reason: str) -> bool:
        request = self._requests.pop(request_id, None)
        if request is None:
            return False
        fulfiller = request.assigned_fulfiller
        if fulfiller is not None and self._assignments.get(fulfiller) == request_id:
            del self._assignments[fulfiller]
        record_request_removal(reason)
        self._logger.debug("Removed request", request_id=request_id, reason=reason)
        self._publish(request.zone)
        return True

    def _publish(self, zone: str) -> None:
        record_open_requests(zone, self.open_count(zone))

    def get_stats(self) -> dict[str, Any]:
        return {
            "open_requests": len(self._requests),
            "assigned": len(self._assignments),
            "zones": sorted({r.zone for r in self._requests.values()}),
        }
