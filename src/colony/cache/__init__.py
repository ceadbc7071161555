"""World fact caching and durable write batching."""

from .durable import (
    GLOBAL_ZONE,
    DurableStateBuffer,
    DurableStore,
    InMemoryDurableStore,
    JsonFileDurableStore,
)
from .world_facts import PERMANENT, WorldFactsCache, fact_key, split_key

__all__ = [
    "GLOBAL_ZONE",
    "PERMANENT",
    "DurableStateBuffer",
    "DurableStore",
    "InMemoryDurableStore",
    "JsonFileDurableStore",
    "WorldFactsCache",
    "fact_key",
    "split_key",
]
