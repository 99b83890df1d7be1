"""Reconcile an observed tab against the record store.

An observation is either
- a tab already in `current` (same volatile id): refresh in place,
- a tab from the previous process lifetime (`prev`, position + fingerprint),
- a tab closed earlier in this lifetime (`removed`, position + fingerprint),
- or a brand-new tab, which gets a fresh guid.

Position + fingerprint is a heuristic. Ambiguous matches are logged and the
first candidate wins: false continuity costs less than losing attributes.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from . import guid as guid_mod
from .errors import ConsistencyError
from .persist import PersistenceBridge
from .query import Condition, query, where
from .records import CURRENT, PREV, REMOVED, IdentityRecord, Observation, RecordStore

_LOGGER = logging.getLogger("tab_identity.matcher")

# Earlier partitions win. `prev` entries are lost for good if not matched, so
# they go before same-session reopen candidates.
PRECEDENCE: tuple[str, ...] = (PREV, REMOVED)

OUTCOME_BY_SOURCE = {PREV: "restored", REMOVED: "reopened"}


@dataclass(frozen=True)
class Reconciliation:
    guid: str
    outcome: str  # refreshed | restored | reopened | new
    source: str | None = None


def find_current(store: RecordStore, volatile_id: int) -> str | None:
    """Guid of the `current` record holding `volatile_id`; raises on duplicates."""
    matches = query(store, CURRENT, where(volatile_id=volatile_id))
    if len(matches) > 1:
        raise ConsistencyError(
            f"{len(matches)} current records share volatile id {volatile_id}",
            volatileId=volatile_id,
            guids=matches,
        )
    return matches[0] if matches else None


class Reconciler:
    def __init__(
        self,
        store: RecordStore,
        persistence: PersistenceBridge,
        *,
        generate: Callable[[], str] = guid_mod.generate,
        precedence: tuple[str, ...] = PRECEDENCE,
    ) -> None:
        self.store = store
        self.persistence = persistence
        self.generate = generate
        self.precedence = precedence

    def persist(self) -> None:
        self.persistence.save(self.store.all(CURRENT))

    def reconcile(self, obs: Observation) -> Reconciliation | None:
        if not obs.placed:
            _LOGGER.debug("skip unplaced tab volatile_id=%s index=%s", obs.volatile_id, obs.position_index)
            return None

        known = find_current(self.store, obs.volatile_id)
        if known is not None:
            rec = self.store.all(CURRENT)[known]
            rec.fingerprint = obs.fingerprint
            rec.position_index = obs.position_index
            self.persist()
            return Reconciliation(known, "refreshed", CURRENT)

        for partition in self.precedence:
            hit = self._match(partition, obs)
            if hit is None:
                continue
            rec = self.store.move(hit, partition, CURRENT)
            rec.volatile_id = obs.volatile_id
            rec.position_index = obs.position_index
            rec.fingerprint = obs.fingerprint
            self.persist()
            outcome = OUTCOME_BY_SOURCE.get(partition, "restored")
            _LOGGER.info("%s tab guid=%s volatile_id=%s", outcome, hit, obs.volatile_id)
            return Reconciliation(hit, outcome, partition)

        new_guid = self.generate()
        self.store.put(
            CURRENT,
            new_guid,
            IdentityRecord(
                guid=new_guid,
                volatile_id=obs.volatile_id,
                position_index=obs.position_index,
                fingerprint=obs.fingerprint,
            ),
        )
        self.shift_positions(obs.position_index, +1, exclude=new_guid, inclusive=True)
        self.persist()
        _LOGGER.info("new tab guid=%s volatile_id=%s", new_guid, obs.volatile_id)
        return Reconciliation(new_guid, "new")

    def _match(self, partition: str, obs: Observation) -> str | None:
        hits = query(
            self.store,
            partition,
            where(position_index=obs.position_index, fingerprint=obs.fingerprint),
        )
        if len(hits) > 1:
            _LOGGER.warning(
                "ambiguous %s match volatile_id=%s index=%s candidates=%d; using %s",
                partition,
                obs.volatile_id,
                obs.position_index,
                len(hits),
                hits[0],
            )
        return hits[0] if hits else None

    def shift_positions(self, index: int, delta: int, *, exclude: str | None = None, inclusive: bool = False) -> int:
        """Add `delta` to every `current` position at/after `index`. Returns the number shifted.

        Does not persist; callers persist once after the whole mutation.
        """
        cond = Condition("position_index", "ge" if inclusive else "gt", index)
        current = self.store.all(CURRENT)
        shifted = 0
        for key in query(self.store, CURRENT, (cond,)):
            if key == exclude:
                continue
            current[key].position_index += delta
            shifted += 1
        return shifted
