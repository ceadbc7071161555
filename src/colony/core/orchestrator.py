"""Cycle orchestrator: the single entry point run once per external tick.

A cycle runs these phases in order:

1. census: register newly sighted agents, remove expired ones and those
   missing for a second cycle in a row;
2. memory hygiene, every ``hygiene_interval`` ticks and in batches of
   ``hygiene_batch_size`` zones spread over the following ticks;
3. zone refresh through the facts cache, at an interval the budget
   controller lengthens under degradation;
4. request market validation;
5. the budget gate, computed once before any gated work;
6. dispatch of role groups in tier order, each agent step isolated;
7. staging of zone data and the single durable flush.

Any exception escaping a phase is caught at the top of the cycle and pins
the budget controller to critical degradation for the rest of the run.
Compute used by the cycle is always folded into the controller afterwards.
"""

from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import TypeAdapter, ValidationError

from colony.agents import BEHAVIORS, AgentContext, AgentSettings, RoleBehavior
from colony.agents.base import agent_fact
from colony.budget.controller import BudgetController
from colony.budget.meter import ComputeMeter, PerfCounterMeter, ReserveBucket
from colony.cache.durable import GLOBAL_ZONE, DurableStateBuffer, DurableStore
from colony.cache.world_facts import PERMANENT, WorldFactsCache, fact_key, split_key
from colony.market.requests import RequestMarket
from colony.schemas.models import AnyAgentRecord, Diagnostics, TransporterRecord
from colony.schemas.types import AgentSighting, Role
from colony.utils.errors import (
    AgentStepError,
    DurableFlushError,
    ErrorRing,
    OrchestratorFaultError,
)
from colony.utils.telemetry import (
    PerformanceTimer,
    ThrottledLogger,
    get_logger,
    record_agent_fault,
    record_orchestrator_fault,
    record_tier_skipped,
    update_active_agents_count,
)
from colony.world.interfaces import World
from colony.zone.manager import ZoneManager

if TYPE_CHECKING:
    from colony.config.config import Config

AGENTS_FIELD = "agents"
REQUESTS_FIELD = "requests"
PLANS_FIELD = "plans"

DEFAULT_PRESERVED_FACTS = ("topology.", "idle_position", "depot.")

_RECORD_ADAPTER: TypeAdapter[Any] = TypeAdapter(AnyAgentRecord)


@dataclass
class OrchestratorConfig:
    """Cycle orchestration settings.

    Attributes:
        hygiene_interval: Ticks between memory hygiene sweeps
        hygiene_batch_size: Zones trimmed per tick while a sweep drains
        stats_interval: Ticks between cycle statistics log lines
        cache_clear_interval: Ticks between clears of non-topology facts
        error_ring_size: Recent faults kept for diagnostics
        compute_limit: Per-cycle compute limit of the default meter
        reserve_capacity: Capacity of the default meter's reserve bucket
        persist_agents: Persist agent records for crash recovery
        create_spans: Emit a tracing span per cycle phase
        fault_log_interval: Ticks between repeated logs of the same fault
    """

    hygiene_interval: int = 20
    hygiene_batch_size: int = 10
    stats_interval: int = 100
    cache_clear_interval: int = 100
    error_ring_size: int = 10
    compute_limit: float = 20.0
    reserve_capacity: float = 10_000
    persist_agents: bool = True
    create_spans: bool = False
    fault_log_interval: int = 100


class CycleOrchestrator:
    """Owns the colony's scheduling state and runs one cycle per tick.

    All components are explicit instances owned by the orchestrator, so a
    test can build a fresh orchestrator and inspect every part of it.
    """

    def __init__(
        self,
        world: World,
        meter: ComputeMeter | None = None,
        budget: BudgetController | None = None,
        market: RequestMarket | None = None,
        settings: AgentSettings | None = None,
        config: OrchestratorConfig | None = None,
        store: DurableStore | None = None,
        default_ttl: float = 10,
        fast_ttl: float = 10,
        slow_ttl: float = 500,
        max_cache_entries: int = 10_000,
        preserve_facts: Iterable[str] = DEFAULT_PRESERVED_FACTS,
    ):
        """Initialize orchestrator.

        Args:
            world: Host world (queries, movement, interaction, census)
            meter: Compute meter (wall-clock meter if not given)
            budget: Budget controller
            market: Request market
            settings: Role behavior tunables
            config: Orchestration settings
            store: Durable store flushed into (in-memory if not given)
            default_ttl: TTL of facts stored without one
            fast_ttl: TTL of fast-changing zone facts
            slow_ttl: TTL of zone topology facts
            max_cache_entries: Facts kept before LRU eviction
            preserve_facts: Fact name prefixes kept by the periodic clear
        """
        self.world = world
        self.config = config or OrchestratorConfig()
        self.meter: ComputeMeter = meter or PerfCounterMeter(
            self.config.compute_limit, ReserveBucket(self.config.reserve_capacity)
        )
        self.budget = budget or BudgetController(initial_reserve=self.meter.reserve)
        self.market = market or RequestMarket()
        self.buffer = DurableStateBuffer(store)
        self.cache = WorldFactsCache(
            clock=lambda: self.tick,
            buffer=self.buffer,
            default_ttl=default_ttl,
            max_entries=max_cache_entries,
        )
        self.zones = ZoneManager(world, self.cache, slow_ttl=slow_ttl, fast_ttl=fast_ttl)
        self.ctx = AgentContext(
            world=world,
            cache=self.cache,
            market=self.market,
            zones=self.zones,
            settings=settings or AgentSettings(),
        )
        self.behaviors: dict[Role, RoleBehavior] = {
            behavior.role: behavior(self.ctx) for behavior in BEHAVIORS
        }
        self.preserve_facts = tuple(preserve_facts)

        self.tick = 0
        self.cycles = 0
        self.errors = ErrorRing(self.config.error_ring_size)

        self._records: dict[str, Any] = {}
        self._missing: set[str] = set()
        self._hygiene_queue: deque[str] = deque()
        self._last_flush_writes = 0
        self._last_used = 0.0

        self._logger = get_logger("colony.orchestrator")
        self._perf_logger = get_logger("colony.performance")
        self._faults = ThrottledLogger(self._logger, self.config.fault_log_interval)

    @classmethod
    def from_config(
        cls,
        world: World,
        config: "Config",
        store: DurableStore | None = None,
        meter: ComputeMeter | None = None,
    ) -> "CycleOrchestrator":
        """Build an orchestrator from a loaded configuration."""
        settings = config.orchestrator
        meter = meter or PerfCounterMeter(
            settings.compute_limit, ReserveBucket(settings.reserve_capacity)
        )
        return cls(
            world,
            meter=meter,
            budget=BudgetController(config.budget, initial_reserve=meter.reserve),
            market=RequestMarket(config.market),
            settings=config.agents,
            config=settings,
            store=store,
            default_ttl=config.cache.default_ttl,
            fast_ttl=config.cache.fast_ttl,
            slow_ttl=config.cache.slow_ttl,
            max_cache_entries=config.cache.max_entries,
            preserve_facts=config.cache.preserve_facts,
        )

    @property
    def records(self) -> dict[str, Any]:
        """Registered agent records by agent id."""
        return dict(self._records)

    def record_of(self, agent_id: str) -> Any:
        return self._records.get(agent_id)

    def run_cycle(self, tick: int | None = None) -> Diagnostics:
        """Run one full cycle.

        Args:
            tick: External tick; defaults to the number of cycles run so far

        Returns:
            Diagnostics after the cycle
        """
        self.tick = self.cycles if tick is None else tick
        self.ctx.tick = self.tick
        tick = self.tick
        self.meter.begin_cycle(tick)

        phase = "census"
        try:
            with self._timer(phase):
                sightings = self._census(tick)

            phase = "hygiene"
            if self._hygiene_queue or tick % self.config.hygiene_interval == 0:
                with self._timer(phase):
                    self._hygiene(tick)

            phase = "zones"
            with self._timer(phase):
                self._refresh_zones(tick, sightings)

            phase = "market"
            with self._timer(phase):
                self._validate_market(tick, sightings)

            phase = "gate"
            self.budget.begin_cycle(tick, self.meter.reserve)

            phase = "dispatch"
            self._dispatch(tick, sightings)

            phase = "flush"
            with self._timer(phase):
                self._stage_and_flush(tick)
        except Exception as e:
            fault = OrchestratorFaultError(tick, phase, e)
            self.errors.record(tick, f"orchestrator.{phase}", fault)
            record_orchestrator_fault()
            self._logger.error(
                "Cycle fault, pinning budget to critical",
                tick=tick,
                phase=phase,
                error=str(e),
                error_type=type(e).__name__,
                recovery=fault.recovery_action.value,
                exc_info=True,
            )
            self.budget.force_critical(f"orchestrator fault in {phase}", tick)

        used = self.meter.used()
        self.meter.end_cycle(used)
        self.budget.record_cycle(used, self.meter.limit, self.meter.reserve, tick)
        self._last_used = used
        self.cycles += 1
        update_active_agents_count(len(self._records))

        if tick % self.config.stats_interval == 0:
            self._log_stats(tick)
        return self.diagnostics()

    # Phases

    def _census(self, tick: int) -> dict[str, AgentSighting]:
        sightings: dict[str, AgentSighting] = {}
        for sighting in self.world.agents():
            if sighting.lifetime <= 0:
                if sighting.id in self._records:
                    self.purge(sighting.id, "expired")
                continue

            record = self._records.get(sighting.id)
            if record is None or record.role != sighting.role:
                if record is not None:
                    self.purge(sighting.id, "role_changed")
                record = self.behaviors[sighting.role].create_record(sighting, tick)
                self._records[sighting.id] = record
                self._logger.debug(
                    "Registered agent",
                    agent_id=sighting.id,
                    role=sighting.role.value,
                    zone=sighting.zone,
                    tick=tick,
                )
            record.lifetime = sighting.lifetime
            sightings[sighting.id] = sighting

        # Missing twice in a row means gone; a single miss is tolerated.
        missing = {agent_id for agent_id in self._records if agent_id not in sightings}
        for agent_id in sorted(missing & self._missing):
            self.purge(agent_id, "vanished")
        self._missing = missing - self._missing
        return sightings

    def _hygiene(self, tick: int) -> None:
        visible = set(self.world.zones())
        if not self._hygiene_queue:
            self.cache.evict_expired()
            self._hygiene_queue.extend(
                zone_id for zone_id in self.zones.known_zones() if zone_id not in visible
            )
            if not self._hygiene_queue:
                return
            self._logger.debug(
                "Memory hygiene sweep started", tick=tick, queued=len(self._hygiene_queue)
            )

        for _ in range(min(self.config.hygiene_batch_size, len(self._hygiene_queue))):
            zone_id = self._hygiene_queue.popleft()
            if zone_id not in visible:
                self._forget_zone(zone_id, tick)

    def _forget_zone(self, zone_id: str, tick: int) -> None:
        """Trim a zone that is no longer visible, keeping only its plans."""
        self.zones.forget_zone(zone_id)
        for request in self.market.requests(zone_id):
            self.market.clear_request(request.requester_id)
        self.buffer.drop_zone(zone_id, keep=(PLANS_FIELD,))
        self.buffer.stage(zone_id, "last_seen", tick)
        self._faults.forget(f"{zone_id}:")

    def _refresh_zones(self, tick: int, sightings: dict[str, AgentSighting]) -> None:
        roles: dict[str, list[Role]] = {}
        for sighting in sightings.values():
            roles.setdefault(sighting.zone, []).append(sighting.role)

        interval = self.budget.refresh_interval()
        for zone_id in self.world.zones():
            if self.zones.needs_refresh(zone_id, tick, interval):
                self.zones.refresh(zone_id, tick)
            self.zones.update_role_counts(zone_id, roles.get(zone_id, ()))

        if tick % self.config.cache_clear_interval == 0 and tick > 0:
            dropped = self.cache.clear(self.preserve_facts)
            self._logger.debug("Cleared transient facts", tick=tick, dropped=dropped)

    def _validate_market(self, tick: int, sightings: dict[str, AgentSighting]) -> int:
        def needs(agent_id: str) -> bool:
            sighting = sightings[agent_id]
            return sighting.carried < sighting.capacity

        def assignment(fulfiller_id: str) -> str | None:
            record = self._records.get(fulfiller_id)
            if fulfiller_id not in sightings or not isinstance(record, TransporterRecord):
                return None
            return record.assigned_request_id

        return self.market.validate(tick, sightings.__contains__, needs, assignment)

    def _dispatch(self, tick: int, sightings: dict[str, AgentSighting]) -> None:
        groups: dict[Role, list[AgentSighting]] = {role: [] for role in self.behaviors}
        for sighting in sorted(sightings.values(), key=lambda s: s.id):
            groups[sighting.role].append(sighting)

        for behavior in self.behaviors.values():
            group = groups[behavior.role]
            if not group:
                continue
            if not self.budget.may_run(behavior.tier):
                record_tier_skipped(behavior.tier.value)
                continue

            stride = self.budget.stride(len(group))
            offset = tick % stride
            start = self.meter.used()
            with self._timer(f"dispatch.{behavior.role.value}"):
                for index, sighting in enumerate(group):
                    if index % stride == offset:
                        self._step_agent(behavior, self._records[sighting.id], sighting, tick)
            self.budget.charge(behavior.tier, self.meter.used() - start)

    def _step_agent(
        self, behavior: RoleBehavior, record: Any, sighting: AgentSighting, tick: int
    ) -> None:
        try:
            behavior.step(record, sighting)
        except Exception as e:
            fault = AgentStepError(record.id, behavior.role.value, tick, e)
            self.errors.record(
                tick, behavior.role.value, fault, agent_id=record.id, args=(sighting.position,)
            )
            record_agent_fault(behavior.role.value)
            self._faults.warning(
                f"{record.id}:step",
                tick,
                "Agent step failed",
                agent_id=record.id,
                role=behavior.role.value,
                error=str(e),
                error_type=type(e).__name__,
                recovery=fault.recovery_action.value,
            )
            try:
                behavior.fallback(record, sighting)
            except Exception as fallback_error:
                self.errors.record(
                    tick, behavior.role.value, fallback_error, agent_id=record.id
                )
                self._faults.warning(
                    f"{record.id}:fallback",
                    tick,
                    "Agent fallback failed",
                    agent_id=record.id,
                    error=str(fallback_error),
                )

    def _stage_and_flush(self, tick: int) -> None:
        for zone_id in self.zones.known_zones():
            self.zones.stage(zone_id, self.buffer, tick)
            self.buffer.stage(zone_id, REQUESTS_FIELD, self.market.snapshot(zone_id))
        if self.config.persist_agents:
            self.buffer.stage(
                GLOBAL_ZONE,
                AGENTS_FIELD,
                {agent_id: r.model_dump(mode="json") for agent_id, r in self._records.items()},
            )

        try:
            self._last_flush_writes = self.buffer.flush(tick)
        except DurableFlushError as e:
            self._last_flush_writes = 0
            self.errors.record(tick, "durable", e)
            self._faults.warning(
                "durable:flush",
                tick,
                "Durable flush failed, batch discarded",
                store=e.store,
                writes=e.writes,
                error=str(e.cause),
                recovery=e.recovery_action.value,
            )

    # Agent lifecycle

    def purge(self, agent_id: str, reason: str) -> bool:
        """Forget an agent: its record, node slot, requests and facts.

        Returns:
            True if the agent was registered
        """
        record = self._records.pop(agent_id, None)
        self.zones.release_node(agent_id)
        self.market.remove_agent(agent_id)

        prefix = agent_fact(agent_id, "")
        self.cache.invalidate_matching(lambda key: split_key(key)[1].startswith(prefix))
        for zone_id in set(self.buffer.store.zones()) | set(self.zones.known_zones()):
            self.buffer.discard_fields(zone_id, prefix)
        self._faults.forget(f"{agent_id}:")

        if record is not None:
            self._logger.debug(
                "Removed agent",
                agent_id=agent_id,
                role=record.role.value,
                reason=reason,
                tick=self.tick,
            )
        return record is not None

    def restore(self) -> int:
        """Reload agent records and open requests from the durable store.

        Unreadable entries are skipped; they are rebuilt from the world as
        agents are sighted again.

        Returns:
            Number of agent records restored
        """
        restored = 0
        data, found = self.buffer.read(GLOBAL_ZONE, AGENTS_FIELD)
        if found and isinstance(data, dict):
            for agent_id, raw in data.items():
                try:
                    self._records[agent_id] = _RECORD_ADAPTER.validate_python(raw)
                except ValidationError as e:
                    self._logger.warning(
                        "Skipping unreadable agent record", agent_id=agent_id, error=str(e)
                    )
                    continue
                restored += 1

        requests = 0
        for zone_id in self.buffer.store.zones():
            snapshot, found = self.buffer.read(zone_id, REQUESTS_FIELD)
            if not found or not isinstance(snapshot, dict):
                continue
            try:
                requests += self.market.restore(snapshot)
            except ValidationError as e:
                self._logger.warning("Skipping unreadable requests", zone=zone_id, error=str(e))

        self._logger.info("Restored colony state", agents=restored, requests=requests)
        return restored

    # Zone data

    def get_zone_data(self, zone_id: str, field: str) -> Any:
        """Read a zone field: cached fact, then live zone record, then
        staged or durable state.

        Returns:
            The value, or None if the field is unknown everywhere
        """
        value, found = self.cache.get(fact_key(zone_id, field))
        if found:
            return value
        value, found = self.zones.zone_field(zone_id, field)
        if found:
            return value
        value, found = self.buffer.read(zone_id, field)
        return value if found else None

    def set_zone_data(self, zone_id: str, field: str, value: Any) -> None:
        """Store a host-supplied zone field, such as layout plans."""
        self.cache.put(fact_key(zone_id, field), value, ttl=PERMANENT)
        self.buffer.stage(zone_id, field, value)

    # Diagnostics

    def diagnostics(self) -> Diagnostics:
        cache_stats = self.cache.get_stats()
        return Diagnostics(
            tick=self.tick,
            cycles=self.cycles,
            budget_level=self.budget.level,
            reserve=self.budget.reserve,
            mean_utilization=self.budget.mean_utilization,
            tier_usage={tier.value: used for tier, used in self.budget.tier_usage.items()},
            open_requests=self.market.open_count(),
            agents=len(self._records),
            cache_hits=cache_stats["hits"],
            cache_misses=cache_stats["misses"],
            durable_writes=self._last_flush_writes,
            recent_errors=[str(r) for r in self.errors.records()],
        )

    def _timer(self, phase: str) -> PerformanceTimer:
        return PerformanceTimer(
            phase,
            clock=self.meter.used,
            tick=self.tick,
            logger=self._perf_logger,
            create_span=self.config.create_spans,
        )

    def _log_stats(self, tick: int) -> None:
        self._logger.info(
            "Cycle stats",
            tick=tick,
            cycles=self.cycles,
            used=round(self._last_used, 3),
            agents=len(self._records),
            budget=self.budget.get_stats(),
            cache=self.cache.get_stats(),
            market=self.market.get_stats(),
            zones=self.zones.get_stats(),
            durable=self.buffer.get_stats(),
            errors=self.errors.total,
        )
