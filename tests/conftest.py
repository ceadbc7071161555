"""Shared fixtures for colony tests."""

import pytest

from colony.agents.base import AgentContext, AgentSettings
from colony.cache.durable import DurableStateBuffer, InMemoryDurableStore
from colony.cache.world_facts import WorldFactsCache
from colony.market.requests import RequestMarket
from colony.schemas.types import EntityKind, EntityRef, Position
from colony.world.grid import GridWorld
from colony.zone.manager import ZoneManager

ZONE = "W1N1"


def pos(x: int, y: int, zone: str = ZONE) -> Position:
    return Position(x, y, zone)


class Clock:
    """Manually advanced tick source."""

    def __init__(self, tick: int = 0):
        self.tick = tick

    def __call__(self) -> int:
        return self.tick

    def advance(self, ticks: int = 1) -> int:
        self.tick += ticks
        return self.tick


class FakeMeter:
    """Compute meter with scripted usage and reserve."""

    def __init__(self, limit: float = 20.0, reserve: float = 10_000.0, per_cycle: float = 5.0):
        self._limit = limit
        self._reserve = reserve
        self.per_cycle = per_cycle
        self.begun: list[int] = []
        self.ended: list[float] = []

    @property
    def limit(self) -> float:
        return self._limit

    @property
    def reserve(self) -> float:
        return self._reserve

    def set_reserve(self, reserve: float) -> None:
        self._reserve = reserve

    def used(self) -> float:
        return self.per_cycle

    def begin_cycle(self, tick: int) -> None:
        self.begun.append(tick)

    def end_cycle(self, used: float) -> None:
        self.ended.append(used)


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def store() -> InMemoryDurableStore:
    return InMemoryDurableStore()


@pytest.fixture
def buffer(store: InMemoryDurableStore) -> DurableStateBuffer:
    return DurableStateBuffer(store)


@pytest.fixture
def cache(clock: Clock, buffer: DurableStateBuffer) -> WorldFactsCache:
    return WorldFactsCache(clock, buffer)


@pytest.fixture
def world() -> GridWorld:
    """A zone with one controller and one depot, nothing else."""
    world = GridWorld([ZONE])
    world.add_entity(
        EntityRef("ctrl", EntityKind.CONTROLLER, pos(25, 25), progress_total=1000, extra={"level": 3})
    )
    world.add_entity(EntityRef("depot", EntityKind.DEPOT, pos(10, 10), capacity=1000))
    return world


@pytest.fixture
def market() -> RequestMarket:
    return RequestMarket()


@pytest.fixture
def zones(world: GridWorld, cache: WorldFactsCache) -> ZoneManager:
    return ZoneManager(world, cache)


@pytest.fixture
def ctx(
    world: GridWorld,
    cache: WorldFactsCache,
    market: RequestMarket,
    zones: ZoneManager,
    clock: Clock,
) -> AgentContext:
    context = AgentContext(world, cache, market, zones, AgentSettings(), tick=clock.tick)
    return context


@pytest.fixture
def fake_meter() -> FakeMeter:
    return FakeMeter()
