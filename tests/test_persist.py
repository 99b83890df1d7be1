from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

import pytest


def _records(*specs: tuple[str, int, int, str]):  # noqa: ANN202
    from tab_identity.records import IdentityRecord

    return {g: IdentityRecord(g, vid, idx, fp) for g, vid, idx, fp in specs}


def test_json_file_store_save_load_roundtrip(tmp_path: Path) -> None:
    from tab_identity.persist import JsonFileStore, PersistenceBridge

    async def _main() -> None:
        bridge = PersistenceBridge(JsonFileStore(tmp_path))
        bridge.save(_records(("a", 1, 0, "f1"), ("b", 2, 1, "f2")))
        await bridge.close()

        loaded = await PersistenceBridge(JsonFileStore(tmp_path)).load()
        assert sorted(loaded) == ["a", "b"]
        assert loaded["b"].position_index == 1

    asyncio.run(_main())

    path = tmp_path / "TabRegistry.json"
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["version"] == 1
    assert set(payload["items"]) == {"a", "b"}
    if os.name != "nt":
        assert path.stat().st_mode & 0o777 == 0o600


def test_missing_or_corrupt_snapshot_loads_empty(tmp_path: Path) -> None:
    from tab_identity.persist import JsonFileStore, PersistenceBridge

    async def _main() -> None:
        bridge = PersistenceBridge(JsonFileStore(tmp_path), key="Other")
        assert await bridge.load() == {}

        (tmp_path / "Other.json").write_text("{not json", encoding="utf-8")
        assert await bridge.load() == {}

    asyncio.run(_main())


def test_second_save_keeps_backup(tmp_path: Path) -> None:
    from tab_identity.persist import JsonFileStore, PersistenceBridge

    store = JsonFileStore(tmp_path)

    async def _main() -> None:
        bridge = PersistenceBridge(store)
        bridge.save(_records(("a", 1, 0, "f1")))
        await bridge.flush()
        assert store.last_write is not None and store.last_write["backup"] is False
        bridge.save(_records(("a", 1, 0, "f2"), ("b", 2, 1, "g")))
        await bridge.close()

    asyncio.run(_main())
    assert store.last_write is not None
    assert store.last_write["backup"] is True
    assert store.last_write["tabs"] == 2
    assert store.last_write["path"] == str(tmp_path / "TabRegistry.json")
    backup = json.loads((tmp_path / "TabRegistry.json.bak").read_text(encoding="utf-8"))
    assert backup["items"]["a"]["fingerprint"] == "f1"


def test_writes_land_in_mutation_order() -> None:
    from tab_identity.persist import PersistenceBridge

    class _SlowStore:
        def __init__(self) -> None:
            self.seen: list[list[str]] = []

        async def load(self, key: str) -> dict[str, Any] | None:  # noqa: ARG002
            return None

        async def save(self, key: str, snapshot: dict[str, Any]) -> None:  # noqa: ARG002
            await asyncio.sleep(0.01 if len(self.seen) == 0 else 0)
            self.seen.append(sorted(snapshot))

    store = _SlowStore()

    async def _main() -> None:
        bridge = PersistenceBridge(store)
        records = _records(("a", 1, 0, "f"))
        bridge.save(records)
        records.update(_records(("b", 2, 1, "g")))
        bridge.save(records)
        del records["a"]
        bridge.save(records)
        await bridge.flush()
        await bridge.close()

    asyncio.run(_main())
    assert store.seen == [["a"], ["a", "b"], ["b"]]


def test_save_failure_is_logged_and_next_write_retries(caplog: pytest.LogCaptureFixture) -> None:
    from tab_identity.persist import MemoryStore, PersistenceBridge

    class _FlakyStore(MemoryStore):
        def __init__(self) -> None:
            super().__init__()
            self.fail_next = True

        async def save(self, key: str, snapshot: dict[str, Any]) -> None:
            if self.fail_next:
                self.fail_next = False
                raise OSError("disk full")
            await super().save(key, snapshot)

    store = _FlakyStore()

    async def _main() -> PersistenceBridge:
        bridge = PersistenceBridge(store)
        bridge.save(_records(("a", 1, 0, "f")))
        await bridge.flush()
        assert "TabRegistry" not in store.data
        bridge.save(_records(("a", 1, 0, "f"), ("b", 2, 1, "g")))
        await bridge.close()
        return bridge

    with caplog.at_level(logging.WARNING, logger="tab_identity.persist"):
        bridge = asyncio.run(_main())
    assert bridge.failures == 1
    assert set(store.data["TabRegistry"]) == {"a", "b"}
    assert any("snapshot_save_failed" in r.getMessage() for r in caplog.records)


def test_load_failure_yields_empty_prev() -> None:
    from tab_identity.persist import PersistenceBridge

    class _BrokenStore:
        async def load(self, key: str) -> dict[str, Any] | None:  # noqa: ARG002
            raise OSError("unreadable")

        async def save(self, key: str, snapshot: dict[str, Any]) -> None:  # noqa: ARG002
            return None

    assert asyncio.run(PersistenceBridge(_BrokenStore()).load()) == {}


def test_decode_snapshot_skips_malformed_entries() -> None:
    from tab_identity.persist import decode_snapshot

    out = decode_snapshot(
        {
            "ok": {"volatileId": 1, "positionIndex": 0, "fingerprint": "f"},
            "no-index": {"volatileId": 2, "fingerprint": "f"},
            "bad-type": "nope",
            "": {"volatileId": 3, "positionIndex": 0},
            "text-index": {"volatileId": 4, "positionIndex": "x"},
        }
    )
    assert list(out) == ["ok"]
    assert out["ok"].guid == "ok"
    assert out["ok"].attributes == {}
