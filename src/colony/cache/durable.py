"""End-of-cycle batching of durable state writes.

Durable writes are the most expensive operation per unit, so every
component stages per-zone fields into a DurableStateBuffer during the cycle
and the orchestrator flushes once, after all logic has run. A later stage
of the same (zone, field) replaces the earlier one; each pair is written at
most once per flush.

Deletions are staged the same way and travel to the store in the flush
batch, applied before the writes. A value staged after a deletion of the
same field therefore survives it.

Staged values are re-derivable from in-cycle recomputation. If the process
stops before a flush, that cycle's staged writes are simply lost.
"""

import os
from pathlib import Path
from typing import Any, NamedTuple, Protocol

import orjson

from colony.utils.errors import DurableFlushError
from colony.utils.telemetry import get_logger, record_durable_writes

GLOBAL_ZONE = "_global"

FieldKey = tuple[str, str]


class Drop(NamedTuple):
    """A staged deletion of zone fields.

    With ``prefix`` set, fields starting with it are removed; otherwise the
    whole zone is, except the fields named in ``keep``.
    """

    zone_id: str
    prefix: str | None = None
    keep: tuple[str, ...] = ()

    def covers(self, zone_id: str, field: str) -> bool:
        if zone_id != self.zone_id:
            return False
        if self.prefix is not None:
            return field.startswith(self.prefix)
        return field not in self.keep


class DurableStore(Protocol):
    """Persistent per-zone field storage supplied by the host."""

    def read(self, zone_id: str, field: str) -> tuple[Any, bool]:
        """Return (value, found) for a zone field."""
        ...

    def write_many(self, writes: dict[FieldKey, Any], drops: tuple[Drop, ...] = ()) -> None:
        """Apply one batch: the deletions in ``drops``, then the writes."""
        ...

    def zones(self) -> list[str]:
        ...


class InMemoryDurableStore:
    """Durable store backed by a nested dict, for tests and hosts that
    persist the dict themselves."""

    def __init__(self, data: dict[str, dict[str, Any]] | None = None):
        self.data: dict[str, dict[str, Any]] = data if data is not None else {}
        self.write_batches = 0

    def read(self, zone_id: str, field: str) -> tuple[Any, bool]:
        zone = self.data.get(zone_id)
        if zone is None or field not in zone:
            return None, False
        return zone[field], True

    def write_many(self, writes: dict[FieldKey, Any], drops: tuple[Drop, ...] = ()) -> None:
        for drop in drops:
            self._apply_drop(drop)
        for (zone_id, field), value in writes.items():
            self.data.setdefault(zone_id, {})[field] = value
        self.write_batches += 1

    def zones(self) -> list[str]:
        return list(self.data)

    def drop_zone(self, zone_id: str, keep: tuple[str, ...] = ()) -> None:
        """Remove a zone's fields, except those named in ``keep``."""
        self._apply_drop(Drop(zone_id, keep=keep))

    def drop_fields(self, zone_id: str, prefix: str) -> int:
        """Remove a zone's fields whose name starts with ``prefix``."""
        return self._apply_drop(Drop(zone_id, prefix=prefix))

    def _apply_drop(self, drop: Drop) -> int:
        zone = self.data.get(drop.zone_id)
        if zone is None:
            return 0
        names = [name for name in zone if drop.covers(drop.zone_id, name)]
        for name in names:
            del zone[name]
        if not zone and drop.prefix is None:
            del self.data[drop.zone_id]
        return len(names)


def _default(obj: Any) -> Any:
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    if isinstance(obj, tuple):
        # NamedTuples (positions, cached targets)
        return list(obj)
    raise TypeError(f"Type is not JSON serializable: {type(obj).__name__}")


class JsonFileDurableStore(InMemoryDurableStore):
    """Durable store snapshotting to a JSON file after every batch.

    The file is replaced atomically so a crash mid-write leaves the previous
    snapshot intact. Values come back as plain JSON types.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        data: dict[str, dict[str, Any]] = {}
        if self.path.exists():
            raw = self.path.read_bytes()
            if raw.strip():
                data = orjson.loads(raw)
        super().__init__(data)
        self._logger = get_logger("colony.durable.file")

    def write_many(self, writes: dict[FieldKey, Any], drops: tuple[Drop, ...] = ()) -> None:
        super().write_many(writes, drops)
        self._persist()

    def drop_zone(self, zone_id: str, keep: tuple[str, ...] = ()) -> None:
        super().drop_zone(zone_id, keep)
        self._persist()

    def drop_fields(self, zone_id: str, prefix: str) -> int:
        dropped = super().drop_fields(zone_id, prefix)
        if dropped:
            self._persist()
        return dropped

    def _persist(self) -> None:
        payload = orjson.dumps(
            self.data,
            default=_default,
            option=orjson.OPT_SORT_KEYS | orjson.OPT_NON_STR_KEYS,
        )
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_bytes(payload)
        os.replace(tmp, self.path)
        self._logger.debug("Durable snapshot written", path=str(self.path), bytes=len(payload))


class DurableStateBuffer:
    """In-cycle staging area for durable per-zone state."""

    def __init__(self, store: DurableStore | None = None):
        """Initialize buffer.

        Args:
            store: Durable store flushed into (in-memory if not given)
        """
        self.store: DurableStore = store if store is not None else InMemoryDurableStore()
        self._staged: dict[FieldKey, Any] = {}
        self._drops: list[Drop] = []
        self._last_flush_tick: int | None = None
        self._stage_calls = 0
        self._total_writes = 0
        self._last_flush_writes = 0
        self._logger = get_logger("colony.durable")

    def stage(self, zone_id: str, field: str, value: Any) -> None:
        """Stage a write; the latest value per (zone, field) wins."""
        self._staged[(zone_id, field)] = value
        self._stage_calls += 1

    def mark_dirty(self, zone_id: str | None, field: str, value: Any) -> None:
        """Stage a freshly computed cache value for persistence."""
        self.stage(zone_id or GLOBAL_ZONE, field, value)

    def read(self, zone_id: str, field: str) -> tuple[Any, bool]:
        """Read through: a staged value first, then the durable store.

        A field covered by a pending deletion reads as missing.
        """
        key = (zone_id, field)
        if key in self._staged:
            return self._staged[key], True
        if any(drop.covers(zone_id, field) for drop in self._drops):
            return None, False
        return self.store.read(zone_id, field)

    def drop_zone(self, zone_id: str, keep: tuple[str, ...] = ()) -> None:
        """Stage removal of a zone's stored fields, except those in ``keep``."""
        drop = Drop(zone_id, keep=tuple(keep))
        self._discard_staged(drop)
        self._drops.append(drop)

    def discard_fields(self, zone_id: str, prefix: str) -> int:
        """Forget a zone's fields starting with ``prefix``.

        Staged values go at once; stored ones at the next flush.

        Returns:
            Number of staged writes dropped
        """
        drop = Drop(zone_id, prefix=prefix)
        self._drops.append(drop)
        return self._discard_staged(drop)

    def _discard_staged(self, drop: Drop) -> int:
        keys = [k for k in self._staged if drop.covers(*k)]
        for key in keys:
            del self._staged[key]
        return len(keys)

    @property
    def pending(self) -> int:
        """Distinct (zone, field) pairs waiting for the next flush."""
        return len(self._staged)

    @property
    def pending_drops(self) -> int:
        return len(self._drops)

    def flush(self, tick: int) -> int:
        """Write all staged values and deletions to the durable store.

        Runs at most once per cycle and hands the store a single batch; a
        second call for the same tick is a logged no-op.

        Args:
            tick: Current cycle tick

        Returns:
            Number of (zone, field) writes applied

        Raises:
            DurableFlushError: If the store rejected the batch. The batch is
                discarded either way.
        """
        if self._last_flush_tick == tick:
            self._logger.warning(
                "Flush already ran this cycle", tick=tick, pending=len(self._staged)
            )
            return 0

        self._last_flush_tick = tick
        batch, self._staged = self._staged, {}
        drops, self._drops = tuple(self._drops), []
        self._last_flush_writes = 0
        if not batch and not drops:
            return 0

        try:
            self.store.write_many(batch, drops)
        except Exception as e:
            raise DurableFlushError(type(self.store).__name__, len(batch), e) from e

        self._last_flush_writes = len(batch)
        self._total_writes += len(batch)
        record_durable_writes(len(batch))
        self._logger.debug(
            "Durable state flushed",
            tick=tick,
            writes=len(batch),
            drops=len(drops),
            stage_calls=self._stage_calls,
        )
        self._stage_calls = 0
        return len(batch)

    def get_stats(self) -> dict[str, Any]:
        return {
            "pending": len(self._staged),
            "pending_drops": len(self._drops),
            "last_flush_tick": self._last_flush_tick,
            "last_flush_writes": self._last_flush_writes,
            "total_writes": self._total_writes,
        }
