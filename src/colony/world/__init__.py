"""Host world interfaces and the in-memory reference world."""

from .grid import Body, GridWorld, demo_world
from .interfaces import Census, EntityPredicate, Interaction, Movement, World, WorldQuery

__all__ = [
    "Body",
    "Census",
    "EntityPredicate",
    "GridWorld",
    "Interaction",
    "Movement",
    "World",
    "WorldQuery",
    "demo_world",
]
