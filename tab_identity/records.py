"""Identity records and the three-partition record store.

Partitions:
- current: tabs open in this process lifetime.
- removed: tabs closed in this process lifetime (reopen candidates).
- prev: snapshot of `current` from the previous process lifetime, drained as
  entries are matched. Entries never matched are abandoned with the process.

A guid lives in at most one partition at a time.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .errors import InvalidPartitionError

CURRENT = "current"
REMOVED = "removed"
PREV = "prev"
PARTITIONS: tuple[str, ...] = (CURRENT, REMOVED, PREV)

# Position reported by host surfaces for tabs that are not placed yet.
UNPLACED = -1


@dataclass
class IdentityRecord:
    guid: str
    volatile_id: int
    position_index: int
    fingerprint: str
    attributes: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "guid": self.guid,
            "volatileId": self.volatile_id,
            "positionIndex": self.position_index,
            "fingerprint": self.fingerprint,
            "attributes": dict(self.attributes),
        }

    @classmethod
    def from_dict(cls, guid: str, raw: Mapping[str, Any]) -> IdentityRecord:
        attrs = raw.get("attributes")
        return cls(
            guid=str(raw.get("guid") or guid),
            volatile_id=int(raw["volatileId"]),
            position_index=int(raw["positionIndex"]),
            fingerprint=str(raw.get("fingerprint") or ""),
            attributes=dict(attrs) if isinstance(attrs, Mapping) else {},
        )


@dataclass(frozen=True)
class Observation:
    """A tab as seen by the host at one instant."""

    volatile_id: int
    position_index: int
    fingerprint: str

    @property
    def placed(self) -> bool:
        return self.position_index >= 0


class RecordStore:
    def __init__(self) -> None:
        self._partitions: dict[str, dict[str, IdentityRecord]] = {name: {} for name in PARTITIONS}
        self.prev_loaded = False
        self.pending: deque[Observation] = deque()

    def _partition(self, name: str) -> dict[str, IdentityRecord]:
        try:
            return self._partitions[name]
        except KeyError:
            raise InvalidPartitionError(f"Unknown partition: {name!r}", partition=name) from None

    def get(self, partition: str, guid: str) -> IdentityRecord | None:
        return self._partition(partition).get(guid)

    def put(self, partition: str, guid: str, record: IdentityRecord) -> None:
        target = self._partition(partition)
        for name, other in self._partitions.items():
            if name != partition and guid in other:
                raise ValueError(f"guid {guid} already present in {name!r}, cannot put into {partition!r}")
        target[guid] = record

    def remove(self, partition: str, guid: str) -> IdentityRecord | None:
        return self._partition(partition).pop(guid, None)

    def move(self, guid: str, source: str, target: str) -> IdentityRecord:
        src = self._partition(source)
        dst = self._partition(target)
        record = src.get(guid)
        if record is None:
            raise KeyError(f"guid {guid} not in {source!r}")
        dst[guid] = record
        del src[guid]
        return record

    def all(self, partition: str) -> dict[str, IdentityRecord]:
        return self._partition(partition)

    def locate(self, guid: str) -> str | None:
        for name, part in self._partitions.items():
            if guid in part:
                return name
        return None

    def load_prev(self, records: Iterable[IdentityRecord]) -> None:
        if self.prev_loaded:
            raise RuntimeError("previous session snapshot already loaded")
        prev = self._partitions[PREV]
        for rec in records:
            # A guid already resurrected (or minted) this session keeps its live record.
            if self.locate(rec.guid) is None:
                prev[rec.guid] = rec
        self.prev_loaded = True

    def clear(self) -> None:
        for part in self._partitions.values():
            part.clear()
        self.pending.clear()

    def counts(self) -> dict[str, int]:
        return {name: len(part) for name, part in self._partitions.items()}
