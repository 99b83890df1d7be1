"""TabRegistry: the single registry service owned by the process.

Lifecycle:
    registry = TabRegistry(JsonFileStore(cfg.data_dir))
    await registry.start()        # loads the previous session into `prev`
    ...
    await registry.shutdown()     # cancels pending removals, flushes writes

Everything runs on one event loop. Mutating calls are synchronous and persist
write-through; only start/shutdown and delayed removals await.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from .attributes import AttributeStore
from .errors import ConsistencyError, InconsistentError, NotFoundError, RegistryError
from .matcher import Reconciler, Reconciliation, find_current
from .persist import DEFAULT_KEY, PersistenceBridge, SnapshotStore, decode_snapshot
from .query import query, where
from .records import CURRENT, PREV, REMOVED, IdentityRecord, Observation, RecordStore

_LOGGER = logging.getLogger("tab_identity.registry")

T = TypeVar("T")


@dataclass(frozen=True)
class Lookup(Generic[T]):
    """Result of a public lookup: either a value or a NotFound/Inconsistent error."""

    value: T | None = None
    error: RegistryError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


class TabRegistry:
    def __init__(self, store: SnapshotStore, *, key: str = DEFAULT_KEY, reconciler: Reconciler | None = None) -> None:
        self.records = RecordStore()
        self.persistence = PersistenceBridge(store, key)
        self.reconciler = reconciler or Reconciler(self.records, self.persistence)
        self.attributes = AttributeStore(self.records, self.persist)
        self._removals: dict[int, asyncio.Task[None]] = {}
        self._started = False
        # Receives consistency violations raised outside a caller's stack (delayed removals).
        self.fatal_handler: Callable[[ConsistencyError], None] | None = None

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def start(self, snapshot: Mapping[str, Any] | None = None) -> None:
        """Install the previous session into `prev`, then replay buffered observations."""
        if self._started:
            raise RuntimeError("TabRegistry already started")
        self._started = True
        prev = decode_snapshot(snapshot) if snapshot is not None else await self.persistence.load()
        self.records.load_prev(prev.values())
        _LOGGER.info("registry started prev=%d pending=%d", len(prev), len(self.records.pending))

        while self.records.pending:
            self.reconciler.reconcile(self.records.pending.popleft())

    async def shutdown(self) -> None:
        tasks = self.cancel_removals()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self.persistence.close()

    def cancel_removals(self) -> list[asyncio.Task[None]]:
        """Drop every scheduled removal. A host exiting closes all of its tabs at once."""
        tasks = list(self._removals.values())
        self._removals.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            _LOGGER.info("cancelled %d pending removals", len(tasks))
        return tasks

    def end_session(self) -> int:
        """Demote every current record to `prev` before a new host session reports its tabs.

        Volatile ids restart with each host session, so surviving tabs are matched
        back by position and fingerprint instead of by id.
        """
        self.cancel_removals()
        guids = list(self.records.all(CURRENT))
        for guid in guids:
            self.records.move(guid, CURRENT, PREV)
        if guids:
            _LOGGER.info("session ended; %d tabs awaiting restore", len(guids))
        return len(guids)

    @property
    def started(self) -> bool:
        return self._started

    def persist(self) -> None:
        self.persistence.save(self.records.all(CURRENT))

    # ─────────────────────────────────────────────────────────────────────────
    # Mutations (driven by the event router)
    # ─────────────────────────────────────────────────────────────────────────

    def observe(self, obs: Observation) -> Reconciliation | None:
        """Reconcile `obs`, or buffer it while the previous session is still loading."""
        if not obs.placed:
            _LOGGER.debug("skip unplaced tab volatile_id=%s", obs.volatile_id)
            return None
        if not self.records.prev_loaded and find_current(self.records, obs.volatile_id) is None:
            self.records.pending.append(obs)
            _LOGGER.debug("buffered volatile_id=%s pending=%d", obs.volatile_id, len(self.records.pending))
            return None
        return self.reconciler.reconcile(obs)

    def refresh_fingerprint(self, volatile_id: int, fingerprint: str) -> str | None:
        """Update the fingerprint of a known tab. Returns its guid, or None if unknown."""
        key = find_current(self.records, volatile_id)
        if key is None:
            return None
        self.records.all(CURRENT)[key].fingerprint = fingerprint
        self.persist()
        return key

    def replace(self, old_volatile_id: int, new_volatile_id: int) -> str | None:
        key = find_current(self.records, old_volatile_id)
        if key is None:
            _LOGGER.info("replace of unknown volatile_id=%s -> %s ignored", old_volatile_id, new_volatile_id)
            return None
        stale = find_current(self.records, new_volatile_id)
        if stale is not None and stale != key:
            _LOGGER.warning("volatile_id=%s already held by guid=%s; retiring it", new_volatile_id, stale)
            self.records.move(stale, CURRENT, REMOVED)
        self.records.all(CURRENT)[key].volatile_id = new_volatile_id
        self.persist()
        return key

    def remove(self, volatile_id: int) -> str | None:
        """Move the tab to `removed` and close the gap it leaves in positions."""
        key = find_current(self.records, volatile_id)
        if key is None:
            _LOGGER.debug("remove of unknown volatile_id=%s", volatile_id)
            return None
        rec = self.records.move(key, CURRENT, REMOVED)
        self.reconciler.shift_positions(rec.position_index, -1)
        self.persist()
        _LOGGER.info("removed tab guid=%s volatile_id=%s", key, volatile_id)
        return key

    def schedule_removal(self, volatile_id: int, delay: float) -> asyncio.Task[None]:
        """Remove after `delay` seconds unless cancel_removals() runs first."""
        previous = self._removals.pop(volatile_id, None)
        if previous is not None:
            previous.cancel()

        async def _later() -> None:
            await asyncio.sleep(max(0.0, delay))
            if self._removals.get(volatile_id) is task:
                del self._removals[volatile_id]
            self.remove(volatile_id)

        task = asyncio.get_running_loop().create_task(_later(), name=f"tab-identity-remove-{volatile_id}")
        task.add_done_callback(self._removal_done)
        self._removals[volatile_id] = task
        return task

    def _removal_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        _LOGGER.error("delayed removal failed: %s", exc)
        if isinstance(exc, ConsistencyError) and self.fatal_handler is not None:
            self.fatal_handler(exc)

    def update_positions(self, positions: Mapping[int, int]) -> int:
        """Rewrite `position_index` from a {volatile_id: index} map of true positions."""
        changed = 0
        for rec in self.records.all(CURRENT).values():
            index = positions.get(rec.volatile_id)
            if index is None or index < 0 or index == rec.position_index:
                continue
            rec.position_index = index
            changed += 1
        if changed:
            self.persist()
        return changed

    def reset(self) -> None:
        """Forget every identity, including the previous session, and persist empty state."""
        self.cancel_removals()
        self.records.clear()
        self.persist()
        _LOGGER.info("registry reset")

    # ─────────────────────────────────────────────────────────────────────────
    # Public queries
    # ─────────────────────────────────────────────────────────────────────────

    def lookup_guid(self, volatile_id: int) -> Lookup[str]:
        matches = query(self.records, CURRENT, where(volatile_id=volatile_id))
        if not matches:
            return Lookup(error=NotFoundError(f"No current tab with volatile id {volatile_id}", volatileId=volatile_id))
        if len(matches) > 1:
            return Lookup(
                error=InconsistentError(
                    f"{len(matches)} current tabs share volatile id {volatile_id}",
                    volatileId=volatile_id,
                    guids=matches,
                )
            )
        return Lookup(matches[0])

    def lookup_id(self, guid: str) -> Lookup[int]:
        rec = self.records.get(CURRENT, guid)
        if rec is None:
            return Lookup(error=NotFoundError(f"No current tab with guid {guid}", guid=guid))
        return Lookup(rec.volatile_id)

    def guid(self, volatile_id: int) -> str:
        return self.lookup_guid(volatile_id).unwrap()

    def id(self, guid: str) -> int:
        return self.lookup_id(guid).unwrap()

    def record(self, guid: str) -> IdentityRecord | None:
        return self.records.get(CURRENT, guid)

    def status(self) -> dict[str, Any]:
        return {
            "started": self._started,
            "prevLoaded": self.records.prev_loaded,
            "partitions": self.records.counts(),
            "pending": len(self.records.pending),
            "pendingRemovals": len(self._removals),
            "persistFailures": self.persistence.failures,
        }
