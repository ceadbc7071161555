"""Integration tests for the cycle orchestrator."""

import pytest
from conftest import ZONE, FakeMeter, pos

from colony.agents.base import agent_fact
from colony.cache.durable import GLOBAL_ZONE, InMemoryDurableStore, JsonFileDurableStore
from colony.cache.world_facts import fact_key
from colony.core.orchestrator import CycleOrchestrator, OrchestratorConfig
from colony.schemas.types import BudgetLevel, EntityKind, EntityRef, Role
from colony.world.grid import GridWorld, demo_world


class BrokenCensusWorld(GridWorld):
    """Grid world whose census can be made to fail."""

    broken = False

    def agents(self):
        if self.broken:
            raise RuntimeError("census unavailable")
        return super().agents()


class RejectingStore(InMemoryDurableStore):
    def write_many(self, writes, drops=()):
        raise OSError("store offline")


class CountingStore(InMemoryDurableStore):
    """In-memory store logging every mutation it receives."""

    def __init__(self):
        super().__init__()
        self.events = []

    def write_many(self, writes, drops=()):
        self.events.append("write_many")
        super().write_many(writes, drops)

    def drop_zone(self, zone_id, keep=()):
        self.events.append(f"drop_zone:{zone_id}")
        super().drop_zone(zone_id, keep)

    def drop_fields(self, zone_id, prefix):
        self.events.append(f"drop_fields:{zone_id}")
        return super().drop_fields(zone_id, prefix)


def run(orch, world, ticks):
    for tick in ticks:
        orch.run_cycle(tick)


@pytest.fixture
def orch(world, fake_meter, store):
    return CycleOrchestrator(world, meter=fake_meter, store=store)


class TestCycle:
    """Test phase order, bookkeeping and the single flush."""

    def test_registers_agents(self, world, orch, fake_meter):
        world.add_agent("b1", Role.BUILDER, pos(20, 20))
        world.add_agent("t1", Role.TRANSPORTER, pos(5, 5))

        diagnostics = orch.run_cycle(0)

        assert set(orch.records) == {"b1", "t1"}
        assert orch.record_of("b1").role is Role.BUILDER
        assert diagnostics.agents == 2
        assert diagnostics.cycles == 1
        assert diagnostics.budget_level is BudgetLevel.NORMAL
        assert fake_meter.begun == [0]
        assert fake_meter.ended == [5.0]

    def test_tick_defaults_to_cycle_count(self, orch):
        orch.run_cycle()
        orch.run_cycle()
        assert orch.tick == 1
        assert orch.cycles == 2

    def test_one_flush_per_cycle(self, world, orch, store):
        """Test all staged writes reach the store in one batch per cycle."""
        world.add_agent("b1", Role.BUILDER, pos(20, 20))

        run(orch, world, range(3))

        assert store.write_batches == 3
        assert "b1" in store.data[GLOBAL_ZONE]["agents"]
        assert store.data[ZONE]["requests"]["b1"]["priority"] == 40.0
        assert store.data[ZONE]["role_counts"]["builder"] == 1
        assert orch.diagnostics().durable_writes > 0

    def test_expired_agent_purged_at_census(self, world, orch):
        world.add_agent("b1", Role.BUILDER, pos(20, 20))
        orch.run_cycle(0)

        world.body("b1").lifetime = 0
        orch.run_cycle(1)

        assert orch.record_of("b1") is None
        assert orch.market.get("b1") is None

    def test_transporter_assignment_survives_validation(self, world, orch):
        """A delivering transporter keeps its request from cycle to cycle."""
        world.add_agent("b1", Role.BUILDER, pos(20, 20))
        orch.run_cycle(0)
        world.add_agent("t1", Role.TRANSPORTER, pos(5, 5), carried=50)
        orch.run_cycle(1)
        assert orch.market.assignment_of("t1") == "b1"

        orch.run_cycle(2)

        assert orch.market.assignment_of("t1") == "b1"
        assert orch.record_of("t1").assigned_request_id == "b1"

    def test_role_change_replaces_record(self, world, orch):
        world.add_agent("x1", Role.BUILDER, pos(20, 20))
        orch.run_cycle(0)

        world.body("x1").role = Role.UPGRADER
        orch.run_cycle(1)

        assert orch.record_of("x1").role is Role.UPGRADER


class TestFaultIsolation:
    """Test agent faults stay local and cycle faults pin the budget."""

    def test_agent_fault_falls_back(self, world, orch, monkeypatch):
        """A failing builder idles while the other agents keep working."""
        world.add_agent("b1", Role.BUILDER, pos(20, 20))
        world.add_agent("t1", Role.TRANSPORTER, pos(5, 5))

        def boom(record, body):
            raise KeyError("missing target")

        monkeypatch.setattr(orch.behaviors[Role.BUILDER], "step", boom)

        diagnostics = orch.run_cycle(0)

        assert world.body("b1").position == pos(19, 19)
        assert world.body("t1").position == pos(6, 6)
        assert orch.budget.level is BudgetLevel.NORMAL
        entry = orch.errors.records()[-1]
        assert entry.source == "builder"
        assert entry.agent_id == "b1"
        assert entry.args == [repr(pos(20, 20))[:50]]
        assert "builder b1 failed at tick 0" in diagnostics.recent_errors[-1]

    def test_cycle_fault_pins_critical(self, fake_meter):
        """A fault outside agent isolation forces critical degradation for good."""
        world = BrokenCensusWorld([ZONE])
        world.add_agent("u1", Role.UPGRADER, pos(3, 3))
        orch = CycleOrchestrator(world, meter=fake_meter)

        world.broken = True
        diagnostics = orch.run_cycle(0)

        assert diagnostics.budget_level is BudgetLevel.DEGRADED_CRITICAL
        assert orch.budget.failsafe
        assert orch.cycles == 1
        assert fake_meter.ended == [5.0]
        assert orch.errors.records()[-1].source == "orchestrator.census"

        world.broken = False
        run(orch, world, range(1, 15))

        assert orch.budget.level is BudgetLevel.DEGRADED_CRITICAL
        assert orch.budget.may_run(orch.behaviors[Role.GATHERER].tier)
        assert not orch.budget.may_run(orch.behaviors[Role.TRANSPORTER].tier)
        assert orch.budget.refresh_interval() == 100

    def test_flush_failure_discards_batch(self, world, fake_meter):
        world.add_agent("b1", Role.BUILDER, pos(20, 20))
        orch = CycleOrchestrator(world, meter=fake_meter, store=RejectingStore())

        diagnostics = orch.run_cycle(0)

        assert diagnostics.budget_level is BudgetLevel.NORMAL
        assert diagnostics.durable_writes == 0
        assert orch.buffer.pending == 0
        assert orch.errors.records()[-1].source == "durable"


class TestBudgetGate:
    def test_low_reserve_runs_only_critical(self, world):
        """Below the low threshold only gatherers are stepped."""
        world.add_entity(
            EntityRef("n1", EntityKind.RESOURCE_NODE, pos(11, 11), amount=3000, capacity=3000, slots=2)
        )
        world.add_agent("g1", Role.GATHERER, pos(11, 12))
        world.add_agent("b1", Role.BUILDER, pos(20, 20))
        world.add_agent("t1", Role.TRANSPORTER, pos(5, 5))
        meter = FakeMeter(reserve=800)
        orch = CycleOrchestrator(world, meter=meter)

        diagnostics = orch.run_cycle(0)

        assert world.body("g1").carried == 4
        assert world.body("b1").position == pos(20, 20)
        assert world.body("t1").position == pos(5, 5)
        assert diagnostics.budget_level is BudgetLevel.DEGRADED_HIGH

    def test_recovers_when_reserve_returns(self, world):
        meter = FakeMeter(reserve=800)
        orch = CycleOrchestrator(world, meter=meter)
        orch.run_cycle(0)

        meter.set_reserve(5000)
        orch.run_cycle(1)

        assert orch.budget.level is BudgetLevel.NORMAL

    def test_degraded_stride(self, world):
        """Under degradation a large group runs one agent in three per tick."""
        for i in range(6):
            world.add_agent(f"t{i}", Role.TRANSPORTER, pos(30, 30 + i))
        meter = FakeMeter(reserve=800)
        orch = CycleOrchestrator(world, meter=meter)
        orch.run_cycle(0)
        assert orch.budget.level is BudgetLevel.DEGRADED_HIGH

        before = {f"t{i}": world.body(f"t{i}").position for i in range(6)}
        orch.run_cycle(1)

        moved = sorted(a for a, p in before.items() if world.body(a).position != p)
        assert moved == ["t1", "t4"]


class TestAgentLifecycle:
    """Test removal of agents that leave the census."""

    def test_vanished_agent_purged_next_cycle(self, world, orch, store):
        world.add_entity(EntityRef("store", EntityKind.ENERGY_STORE, pos(22, 22), amount=500, capacity=1000))
        world.add_agent("u1", Role.UPGRADER, pos(20, 20))
        world.add_agent("u2", Role.UPGRADER, pos(21, 20))
        orch.run_cycle(0)
        key = fact_key(ZONE, agent_fact("u2", "nearby_stores"))
        assert key in orch.cache
        assert "agent.u2.nearby_stores" in store.data[ZONE]

        world.remove_agent("u2")
        orch.run_cycle(1)
        assert orch.record_of("u2") is not None
        assert orch.market.get("u2") is None

        orch.run_cycle(2)

        assert orch.record_of("u2") is None
        assert orch.record_of("u1") is not None
        assert key not in orch.cache
        assert not any(name.startswith("agent.u2.") for name in store.data[ZONE])

    def test_purge_cycle_sends_one_batch(self, world, fake_meter):
        """Removing a vanished agent's durable fields rides on the single flush."""
        store = CountingStore()
        orch = CycleOrchestrator(world, meter=fake_meter, store=store)
        world.add_entity(EntityRef("store", EntityKind.ENERGY_STORE, pos(22, 22), amount=500, capacity=1000))
        world.add_agent("u2", Role.UPGRADER, pos(21, 20))
        orch.run_cycle(0)
        world.remove_agent("u2")
        orch.run_cycle(1)
        store.events.clear()

        orch.run_cycle(2)

        assert orch.record_of("u2") is None
        assert store.events == ["write_many"]
        assert not any(name.startswith("agent.u2.") for name in store.data[ZONE])

    def test_single_miss_tolerated(self, world, orch):
        world.add_agent("b1", Role.BUILDER, pos(20, 20))
        orch.run_cycle(0)
        record = orch.record_of("b1")

        world.remove_agent("b1")
        orch.run_cycle(1)
        world.add_agent("b1", Role.BUILDER, pos(20, 20))
        orch.run_cycle(2)
        orch.run_cycle(3)

        assert orch.record_of("b1") is record

    def test_vanished_gatherer_frees_node(self, world, orch):
        world.add_entity(
            EntityRef("n1", EntityKind.RESOURCE_NODE, pos(11, 11), amount=3000, capacity=3000, slots=1)
        )
        world.add_agent("g1", Role.GATHERER, pos(11, 12))
        orch.run_cycle(0)
        assert orch.zones.node_of("g1").assigned == 1

        world.remove_agent("g1")
        run(orch, world, range(1, 3))

        assert orch.zones.zone(ZONE).nodes["n1"].assigned == 0


class TestHygiene:
    """Test periodic trimming of zones out of sight."""

    def test_invisible_zone_trimmed_to_plans(self, world, orch, store):
        """A zone out of sight keeps only its plans and a last-seen tick."""
        world.add_entity(
            EntityRef("n9", EntityKind.RESOURCE_NODE, pos(5, 5, "W2N1"), amount=100, capacity=100, slots=1)
        )
        orch.run_cycle(0)
        orch.set_zone_data("W2N1", "plans", {"roads": [[1, 2]]})
        orch.run_cycle(1)
        assert "nodes" in store.data["W2N1"]

        world.remove_zone("W2N1")
        run(orch, world, range(2, 20))
        assert "W2N1" in orch.zones.known_zones()

        orch.run_cycle(20)

        assert "W2N1" not in orch.zones.known_zones()
        assert store.data["W2N1"] == {"plans": {"roads": [[1, 2]]}, "last_seen": 20}
        assert orch.get_zone_data("W2N1", "plans") == {"roads": [[1, 2]]}

    def test_trim_waits_for_flush(self, world, fake_meter):
        """Trimming a zone reaches the store only through the cycle's flush."""
        store = CountingStore()
        orch = CycleOrchestrator(world, meter=fake_meter, store=store)
        world.add_entity(
            EntityRef("n9", EntityKind.RESOURCE_NODE, pos(5, 5, "W2N1"), amount=100, capacity=100, slots=1)
        )
        orch.run_cycle(0)
        world.remove_zone("W2N1")
        run(orch, world, range(1, 20))
        store.events.clear()

        orch.run_cycle(20)

        assert store.events == ["write_many"]
        assert store.data["W2N1"] == {"last_seen": 20}

    def test_sweep_drains_in_batches(self, world, fake_meter):
        config = OrchestratorConfig(hygiene_batch_size=2)
        orch = CycleOrchestrator(world, meter=fake_meter, config=config)
        lost = [f"W{i}N1" for i in range(2, 7)]
        for zone_id in lost:
            world.add_entity(
                EntityRef(f"node-{zone_id}", EntityKind.RESOURCE_NODE, pos(5, 5, zone_id), amount=10, capacity=10, slots=1)
            )
        orch.run_cycle(0)
        assert len(orch.zones.known_zones()) == 6
        for zone_id in lost:
            world.remove_zone(zone_id)

        run(orch, world, range(1, 21))
        assert len(orch.zones.known_zones()) == 4
        orch.run_cycle(21)
        assert len(orch.zones.known_zones()) == 2
        orch.run_cycle(22)
        assert orch.zones.known_zones() == [ZONE]

class TestZoneData:
    def test_set_and_get(self, orch, store):
        orch.set_zone_data(ZONE, "plans", {"extensions": 5})
        assert orch.get_zone_data(ZONE, "plans") == {"extensions": 5}

        orch.run_cycle(0)
        assert store.data[ZONE]["plans"] == {"extensions": 5}

    def test_nodes_keep_durable_shape(self, world, orch, store):
        """Node slots read the same live, cached or from the store."""
        world.add_entity(
            EntityRef("n1", EntityKind.RESOURCE_NODE, pos(11, 11), amount=3000, capacity=3000, slots=2)
        )
        world.add_agent("g1", Role.GATHERER, pos(11, 12))
        orch.run_cycle(0)

        expected = {"n1": {"slots": 2, "assigned": 1}}
        assert orch.get_zone_data(ZONE, "nodes") == expected
        assert store.data[ZONE]["nodes"] == expected

        restarted = CycleOrchestrator(world, meter=FakeMeter(), store=store)
        assert restarted.get_zone_data(ZONE, "nodes") == expected

    def test_live_zone_fields(self, world, orch):
        world.add_agent("b1", Role.BUILDER, pos(20, 20))
        orch.run_cycle(0)

        assert orch.get_zone_data(ZONE, "role_counts")["builder"] == 1
        assert orch.get_zone_data(ZONE, "priorities")["build"] == "low"
        assert orch.get_zone_data(ZONE, "unknown") is None


class TestRestore:
    """Test crash recovery from the durable store."""

    def test_round_trip(self, world, fake_meter, store):
        world.add_agent("b1", Role.BUILDER, pos(20, 20))
        world.add_agent("t1", Role.TRANSPORTER, pos(5, 5))
        first = CycleOrchestrator(world, meter=fake_meter, store=store)
        run(first, world, range(3))

        second = CycleOrchestrator(world, meter=FakeMeter(), store=store)

        assert second.restore() == 2
        assert second.record_of("b1").role is Role.BUILDER
        assert second.market.get("b1").priority == 40.0

    def test_round_trip_through_json_file(self, world, fake_meter, tmp_path):
        path = tmp_path / "colony.json"
        world.add_agent("b1", Role.BUILDER, pos(20, 20))
        first = CycleOrchestrator(world, meter=fake_meter, store=JsonFileDurableStore(path))
        first.run_cycle(0)
        last_seen = world.body("b1").position
        first.run_cycle(1)

        second = CycleOrchestrator(world, meter=FakeMeter(), store=JsonFileDurableStore(path))

        assert second.restore() == 1
        request = second.market.get("b1")
        assert request.position == last_seen
        assert request.priority == 40.0
        second.run_cycle(2)
        assert second.record_of("b1") is not None

    def test_skips_unreadable_records(self, world, fake_meter, store):
        store.data[GLOBAL_ZONE] = {"agents": {"x": {"role": "pilot"}}}
        orch = CycleOrchestrator(world, meter=fake_meter, store=store)
        assert orch.restore() == 0


def test_demo_colony_moves_energy(fake_meter):
    """Energy flows from nodes to the spawn and into the controller."""
    world = demo_world()
    orch = CycleOrchestrator(world, meter=fake_meter)

    for _ in range(300):
        diagnostics = orch.run_cycle(world.tick)
        world.advance()

    assert diagnostics.recent_errors == []
    assert diagnostics.agents == 5
    assert world.resolve("spawn-1").amount > 0
    assert world.resolve("ctrl-1").progress > 0
    assert orch.zones.zone("W1N1").role_counts["total"] == 5
