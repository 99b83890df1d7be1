"""Snapshot persistence for the `current` partition.

Design
- One JSON snapshot per key under `data/registry/` (gitignored).
- Atomic writes: write temp file then replace.
- Best-effort: corrupt files load as empty; write failures are logged and the
  next mutation writes again. In-memory state stays authoritative.
- Writes go through a single writer task so they land in mutation order.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import shutil
import time
from collections.abc import Mapping
from contextlib import suppress
from pathlib import Path
from typing import Any, Protocol

from .records import IdentityRecord

_LOGGER = logging.getLogger("tab_identity.persist")

DEFAULT_KEY = "TabRegistry"


class SnapshotStore(Protocol):
    async def load(self, key: str) -> dict[str, Any] | None: ...

    async def save(self, key: str, snapshot: dict[str, Any]) -> None: ...


class MemoryStore:
    """Dict-backed store. Survives as long as the object does."""

    def __init__(self, initial: Mapping[str, dict[str, Any]] | None = None) -> None:
        self.data: dict[str, dict[str, Any]] = {k: dict(v) for k, v in (initial or {}).items()}
        self.saves = 0

    async def load(self, key: str) -> dict[str, Any] | None:
        snap = self.data.get(key)
        return json.loads(json.dumps(snap)) if snap is not None else None

    async def save(self, key: str, snapshot: dict[str, Any]) -> None:
        self.data[key] = json.loads(json.dumps(snapshot))
        self.saves += 1


class JsonFileStore:
    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory).expanduser()
        self.last_write: dict[str, Any] | None = None

    def path_for(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    async def load(self, key: str) -> dict[str, Any] | None:
        return await asyncio.to_thread(self._load_sync, key)

    async def save(self, key: str, snapshot: dict[str, Any]) -> None:
        written = await asyncio.to_thread(self._write, key, snapshot)
        self.last_write = written
        _LOGGER.debug("snapshot_saved path=%s tabs=%d backup=%s", written["path"], written["tabs"], written["backup"])

    def _load_sync(self, key: str) -> dict[str, Any] | None:
        p = self.path_for(key)
        if not p.exists() or not p.is_file():
            return None
        try:
            obj = json.loads(p.read_text(encoding="utf-8", errors="replace"))
        except ValueError:
            _LOGGER.warning("snapshot_corrupt path=%s", p)
            return None
        if not isinstance(obj, dict):
            return None
        items = obj.get("items")
        return dict(items) if isinstance(items, dict) else None

    def _write(self, key: str, snapshot: dict[str, Any]) -> dict[str, Any]:
        """Write one registry snapshot; returns what landed where."""
        target = self.path_for(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        updated_at = int(time.time() * 1000)
        body = json.dumps(
            {"version": 1, "updatedAt": updated_at, "items": snapshot},
            ensure_ascii=True,
            indent=2,
            sort_keys=True,
        )

        # The previous snapshot survives as .bak; a failed copy does not block the write.
        backed_up = False
        if target.is_file():
            with suppress(OSError):
                shutil.copyfile(target, target.with_name(target.name + ".bak"))
                backed_up = True

        staging = target.with_name(target.name + ".tmp")
        staging.write_text(body, encoding="utf-8")
        with suppress(OSError):
            os.chmod(staging, 0o600)
        staging.replace(target)
        with suppress(OSError):
            os.chmod(target, 0o600)
        return {"path": str(target), "updatedAt": updated_at, "tabs": len(snapshot), "backup": backed_up}


def decode_snapshot(snapshot: Mapping[str, Any] | None) -> dict[str, IdentityRecord]:
    out: dict[str, IdentityRecord] = {}
    for guid, raw in (snapshot or {}).items():
        if not (isinstance(guid, str) and guid.strip()) or not isinstance(raw, Mapping):
            continue
        try:
            rec = IdentityRecord.from_dict(guid, raw)
        except (KeyError, TypeError, ValueError):
            _LOGGER.warning("snapshot_entry_skipped guid=%s", guid)
            continue
        out[rec.guid] = rec
    return out


def encode_snapshot(records: Mapping[str, IdentityRecord]) -> dict[str, Any]:
    return {guid: rec.to_dict() for guid, rec in records.items()}


class PersistenceBridge:
    """Write-through mirror of `current` into a SnapshotStore."""

    def __init__(self, store: SnapshotStore, key: str = DEFAULT_KEY) -> None:
        self.store = store
        self.key = key
        self._queue: asyncio.Queue[dict[str, Any]] | None = None
        self._writer: asyncio.Task[None] | None = None
        self.failures = 0

    async def load(self) -> dict[str, IdentityRecord]:
        try:
            snapshot = await self.store.load(self.key)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("snapshot_load_failed key=%s error=%s", self.key, exc)
            return {}
        return decode_snapshot(snapshot)

    def save(self, records: Mapping[str, IdentityRecord]) -> None:
        """Queue a snapshot of `records` taken now. Requires a running event loop."""
        if self._queue is None or self._writer is None or self._writer.done():
            self._queue = asyncio.Queue()
            self._writer = asyncio.get_running_loop().create_task(
                self._drain(self._queue), name="tab-identity-persist"
            )
        self._queue.put_nowait(encode_snapshot(records))

    async def _drain(self, queue: asyncio.Queue[dict[str, Any]]) -> None:
        while True:
            snapshot = await queue.get()
            try:
                await self.store.save(self.key, snapshot)
            except Exception as exc:  # noqa: BLE001
                self.failures += 1
                _LOGGER.warning("snapshot_save_failed key=%s error=%s", self.key, exc)
            finally:
                queue.task_done()

    async def flush(self) -> None:
        if self._queue is not None and self._writer is not None and not self._writer.done():
            await self._queue.join()

    async def close(self) -> None:
        await self.flush()
        writer = self._writer
        self._writer = None
        self._queue = None
        if writer is not None:
            writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await writer
