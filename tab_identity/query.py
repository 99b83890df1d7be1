"""Predicate lookups over a single partition.

A predicate is a conjunction of `Condition(field, op, value)` triples. All
matches are returned in partition order; callers choose the tie-break.
"""

from __future__ import annotations

import operator
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from .records import IdentityRecord, RecordStore

FIELDS = frozenset({"guid", "volatile_id", "position_index", "fingerprint"})

_OPS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": operator.eq,
    "ne": operator.ne,
    "lt": operator.lt,
    "le": operator.le,
    "gt": operator.gt,
    "ge": operator.ge,
}


@dataclass(frozen=True)
class Condition:
    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.field not in FIELDS:
            raise ValueError(f"Unknown record field: {self.field!r}")
        if self.op not in _OPS:
            raise ValueError(f"Unknown operator: {self.op!r}")

    def matches(self, record: IdentityRecord) -> bool:
        return _OPS[self.op](getattr(record, self.field), self.value)


Predicate = Sequence[Condition]


def where(**fields: Any) -> tuple[Condition, ...]:
    """Exact-match predicate: ``where(position_index=0, fingerprint="f1")``."""
    return tuple(Condition(name, "eq", value) for name, value in fields.items())


def query(store: RecordStore, partition: str, predicate: Predicate) -> list[str]:
    records = store.all(partition)
    return [guid for guid, rec in records.items() if all(cond.matches(rec) for cond in predicate)]
