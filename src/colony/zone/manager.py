"""Per-zone intelligence: resource node assignment, role counts, priorities.

Node assignment counts follow a strict increment/decrement discipline:
``assign_node`` increments exactly once per bound agent, ``release_node``
decrements exactly once, and a count never goes below zero. All mutation
happens within the sequential cycle, so no locking is involved.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from colony.cache.durable import DurableStateBuffer
from colony.cache.world_facts import WorldFactsCache, fact_key
from colony.schemas.models import ResourceNodeRecord
from colony.schemas.types import EntityKind, EntityRef, Role
from colony.utils.telemetry import get_logger
from colony.world.interfaces import WorldQuery

TOPOLOGY_PREFIX = "topology."
NODES_FACT = TOPOLOGY_PREFIX + "nodes"
CONTROLLER_FACT = TOPOLOGY_PREFIX + "controller"
SITES_FACT = "construction_sites"
REPAIR_FACT = "repair_targets"


@dataclass
class ZoneRecord:
    """Everything the colony tracks about one zone."""

    zone_id: str
    nodes: dict[str, ResourceNodeRecord] = field(default_factory=dict)
    role_counts: dict[str, int] = field(default_factory=dict)
    priorities: dict[str, str] = field(default_factory=dict)
    construction_sites: int = 0
    repair_targets: int = 0
    last_refresh: int | None = None


class ZoneManager:
    """Owns zone records and the gatherer to resource node bindings."""

    def __init__(
        self,
        world: WorldQuery,
        cache: WorldFactsCache,
        slow_ttl: float = 500,
        fast_ttl: float = 10,
        repair_ceiling: int = 10_000,
    ):
        """Initialize zone manager.

        Args:
            world: World query interface
            cache: Shared facts cache
            slow_ttl: TTL for topology facts (nodes, controller)
            fast_ttl: TTL for fast-changing facts (sites, repair targets)
            repair_ceiling: Damaged structures above this many hits are ignored
        """
        self.world = world
        self.cache = cache
        self.slow_ttl = slow_ttl
        self.fast_ttl = fast_ttl
        self.repair_ceiling = repair_ceiling
        self._zones: dict[str, ZoneRecord] = {}
        self._bindings: dict[str, tuple[str, str]] = {}
        self._logger = get_logger("colony.zone")

    def zone(self, zone_id: str) -> ZoneRecord:
        record = self._zones.get(zone_id)
        if record is None:
            record = ZoneRecord(zone_id)
            self._zones[zone_id] = record
        return record

    def known_zones(self) -> list[str]:
        return list(self._zones)

    def needs_refresh(self, zone_id: str, tick: int, interval: int) -> bool:
        record = self._zones.get(zone_id)
        return record is None or record.last_refresh is None or tick - record.last_refresh >= interval

    def refresh(self, zone_id: str, tick: int) -> ZoneRecord:
        """Bring a zone record up to date through the facts cache."""
        record = self.zone(zone_id)

        nodes = self.cache.get_or_compute(
            fact_key(zone_id, NODES_FACT),
            lambda: self.world.query(zone_id, EntityKind.RESOURCE_NODE),
            ttl=self.slow_ttl,
        )
        self._sync_nodes(record, nodes)

        record.construction_sites = self.cache.get_or_compute(
            fact_key(zone_id, SITES_FACT),
            lambda: len(
                self.world.query(
                    zone_id, EntityKind.CONSUMER_SITE, lambda e: e.progress_total > 0
                )
            ),
            ttl=self.fast_ttl,
        )
        record.repair_targets = self.cache.get_or_compute(
            fact_key(zone_id, REPAIR_FACT),
            lambda: len(self.world.query(zone_id, EntityKind.CONSUMER_SITE, self.needs_repair)),
            ttl=self.fast_ttl,
        )
        controllers = self.cache.get_or_compute(
            fact_key(zone_id, CONTROLLER_FACT),
            lambda: self.world.query(zone_id, EntityKind.CONTROLLER),
            ttl=self.slow_ttl,
        )
        record.priorities = self._priorities(record, controllers[0] if controllers else None)
        record.last_refresh = tick
        return record

    def needs_repair(self, entity: EntityRef) -> bool:
        return 0 < entity.hits_max and entity.hits < entity.hits_max and entity.hits < self.repair_ceiling

    def _sync_nodes(self, record: ZoneRecord, nodes: list[EntityRef]) -> None:
        seen = set()
        for node in nodes:
            seen.add(node.id)
            existing = record.nodes.get(node.id)
            if existing is None:
                record.nodes[node.id] = ResourceNodeRecord(
                    id=node.id,
                    position=node.position,
                    slots=node.slots,
                    remaining_yield=node.amount,
                )
            else:
                existing.slots = node.slots
                existing.remaining_yield = node.amount

        for node_id in [n for n in record.nodes if n not in seen]:
            del record.nodes[node_id]
            for agent_id, (zone_id, bound) in list(self._bindings.items()):
                if zone_id == record.zone_id and bound == node_id:
                    del self._bindings[agent_id]
            self._logger.info("Resource node vanished", zone=record.zone_id, node_id=node_id)

    def _priorities(self, record: ZoneRecord, controller: EntityRef | None) -> dict[str, str]:
        level = controller.extra.get("level", 1) if controller is not None else 0
        ratio = (
            controller.progress / controller.progress_total
            if controller is not None and controller.progress_total
            else 0.0
        )
        return {
            "upgrade": "high" if level < 2 or ratio > 0.8 else "medium",
            "build": "high" if record.construction_sites > 0 else "low",
            "repair": "medium" if record.repair_targets > 0 else "low",
        }

    def assign_node(self, agent_id: str, zone_id: str) -> ResourceNodeRecord | None:
        """Bind a gatherer to the least-loaded node of a zone.

        Picks the node with the lowest assigned/slots ratio, skipping full
        nodes. An agent already bound keeps its node.

        Returns:
            The bound node, or None when every node is full
        """
        bound = self.node_of(agent_id)
        if bound is not None:
            return bound

        record = self._zones.get(zone_id)
        if record is None:
            return None

        best: ResourceNodeRecord | None = None
        best_ratio = float("inf")
        for node in record.nodes.values():
            if node.slots <= 0 or node.full:
                continue
            ratio = node.assigned / node.slots
            if ratio < best_ratio:
                best, best_ratio = node, ratio

        if best is None:
            return None
        best.assigned += 1
        self._bindings[agent_id] = (zone_id, best.id)
        self._logger.debug(
            "Bound gatherer to node",
            agent_id=agent_id,
            node_id=best.id,
            assigned=best.assigned,
            slots=best.slots,
        )
        return best

    def bind_node(self, agent_id: str, zone_id: str, node_id: str) -> bool:
        """Re-establish a known binding, e.g. after restoring agent records.

        Returns:
            False if the node is unknown or already full
        """
        if self.node_of(agent_id) is not None:
            return self._bindings[agent_id] == (zone_id, node_id)
        record = self._zones.get(zone_id)
        node = record.nodes.get(node_id) if record is not None else None
        if node is None or node.full:
            return False
        node.assigned += 1
        self._bindings[agent_id] = (zone_id, node_id)
        return True

    def node_of(self, agent_id: str) -> ResourceNodeRecord | None:
        binding = self._bindings.get(agent_id)
        if binding is None:
            return None
        zone_id, node_id = binding
        record = self._zones.get(zone_id)
        if record is None or node_id not in record.nodes:
            del self._bindings[agent_id]
            return None
        return record.nodes[node_id]

    def release_node(self, agent_id: str) -> bool:
        """Unbind a gatherer; the node's count never drops below zero."""
        binding = self._bindings.pop(agent_id, None)
        if binding is None:
            return False
        zone_id, node_id = binding
        record = self._zones.get(zone_id)
        if record is not None and node_id in record.nodes:
            node = record.nodes[node_id]
            node.assigned = max(0, node.assigned - 1)
        return True

    def update_role_counts(self, zone_id: str, roles: Iterable[Role]) -> dict[str, int]:
        counts = {role.value: 0 for role in Role}
        for role in roles:
            counts[role.value] += 1
        counts["total"] = sum(counts.values())
        self.zone(zone_id).role_counts = counts
        return counts

    def forget_zone(self, zone_id: str) -> bool:
        """Drop a zone that is no longer visible along with its bindings."""
        if self._zones.pop(zone_id, None) is None:
            return False
        for agent_id in [a for a, (z, _) in self._bindings.items() if z == zone_id]:
            del self._bindings[agent_id]
        self.cache.invalidate_prefix(f"{zone_id}:")
        self._logger.info("Forgot zone", zone=zone_id)
        return True

    def stage(self, zone_id: str, buffer: DurableStateBuffer, tick: int) -> None:
        """Stage a zone's spawn-facing fields for the end-of-cycle flush."""
        record = self._zones.get(zone_id)
        if record is None:
            return
        buffer.stage(zone_id, "role_counts", dict(record.role_counts))
        buffer.stage(zone_id, "priorities", dict(record.priorities))
        buffer.stage(
            zone_id,
            "nodes",
            {n.id: {"slots": n.slots, "assigned": n.assigned} for n in record.nodes.values()},
        )
        buffer.stage(zone_id, "construction_sites", record.construction_sites)
        buffer.stage(zone_id, "repair_targets", record.repair_targets)
        buffer.stage(zone_id, "last_update", tick)

    def zone_field(self, zone_id: str, field_name: str) -> tuple[Any, bool]:
        """Read a live field of a zone record."""
        record = self._zones.get(zone_id)
        if record is None:
            return None, False
        if field_name == "nodes":
            return {n.id: {"slots": n.slots, "assigned": n.assigned} for n in record.nodes.values()}, True
        if field_name in ("role_counts", "priorities", "construction_sites", "repair_targets"):
            return getattr(record, field_name), True
        return None, False

    def get_stats(self) -> dict[str, Any]:
        return {
            "zones": len(self._zones),
            "bound_gatherers": len(self._bindings),
            "nodes": sum(len(z.nodes) for z in self._zones.values()),
        }
