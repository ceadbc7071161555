"""Interfaces the colony consumes from the host world.

The colony never inspects world internals. Everything it knows comes
through these calls, and every id it holds may stop resolving between
cycles.
"""

from collections.abc import Callable
from typing import Protocol

from colony.schemas.types import (
    Action,
    ActionResult,
    AgentSighting,
    EntityKind,
    EntityRef,
    MoveResult,
    Position,
)

EntityPredicate = Callable[[EntityRef], bool]


class WorldQuery(Protocol):
    """Read access to world entities."""

    def query(
        self,
        zone_id: str,
        category: EntityKind,
        predicate: EntityPredicate | None = None,
    ) -> list[EntityRef]:
        """List entities of one kind in a zone.

        Idempotent within a cycle, not across cycles.

        Args:
            zone_id: Zone to search
            category: Entity kind to list
            predicate: Optional filter applied to each entity

        Returns:
            Matching entities, possibly empty
        """
        ...

    def resolve(self, entity_id: str) -> EntityRef | None:
        """Look up an entity by id, None if it no longer exists."""
        ...


class Movement(Protocol):
    """Pathing primitive."""

    def move_toward(
        self, agent_id: str, position: Position, path_hint_budget: int
    ) -> MoveResult:
        """Advance an agent toward a position.

        Args:
            agent_id: Agent to move
            position: Destination
            path_hint_budget: Maximum tiles the agent may cover this call

        Returns:
            ARRIVED when adjacent to or on the destination, EN_ROUTE while
            moving, BLOCKED when no progress is possible
        """
        ...


class Interaction(Protocol):
    """Agent actions on world entities."""

    def interact(
        self,
        agent_id: str,
        action: Action,
        target_id: str | None,
        amount: int | None = None,
    ) -> ActionResult:
        """Perform an action on a target.

        ``DROP`` ignores ``target_id`` and drops at the agent's feet.
        ``amount`` limits transfers and withdrawals; None moves as much as
        fits.
        """
        ...


class Census(Protocol):
    """Which agents and zones are currently visible."""

    def agents(self) -> list[AgentSighting]:
        ...

    def zones(self) -> list[str]:
        ...


class World(WorldQuery, Movement, Interaction, Census, Protocol):
    """Everything the orchestrator needs from the host."""
