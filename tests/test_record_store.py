from __future__ import annotations

import re

import pytest


def _rec(guid: str, vid: int, index: int, fp: str):  # noqa: ANN202
    from tab_identity.records import IdentityRecord

    return IdentityRecord(guid=guid, volatile_id=vid, position_index=index, fingerprint=fp)


def test_guid_generate_is_uuid4_and_unique() -> None:
    from tab_identity.guid import generate

    seen = {generate() for _ in range(2000)}
    assert len(seen) == 2000
    sample = next(iter(seen))
    assert re.fullmatch(r"[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}", sample)


def test_move_keeps_guid_in_exactly_one_partition() -> None:
    from tab_identity.records import CURRENT, PARTITIONS, REMOVED, RecordStore

    store = RecordStore()
    store.put(CURRENT, "a", _rec("a", 1, 0, "f1"))
    moved = store.move("a", CURRENT, REMOVED)

    assert moved.guid == "a"
    assert store.locate("a") == REMOVED
    assert sum("a" in store.all(p) for p in PARTITIONS) == 1


def test_put_guid_present_elsewhere_is_rejected() -> None:
    from tab_identity.records import CURRENT, PREV, RecordStore

    store = RecordStore()
    store.put(PREV, "a", _rec("a", 1, 0, "f1"))
    with pytest.raises(ValueError):
        store.put(CURRENT, "a", _rec("a", 2, 0, "f1"))


def test_unknown_partition_raises_invalid_partition() -> None:
    from tab_identity.errors import InvalidPartitionError
    from tab_identity.query import query, where
    from tab_identity.records import RecordStore

    store = RecordStore()
    with pytest.raises(InvalidPartitionError):
        store.get("closed", "a")
    with pytest.raises(InvalidPartitionError):
        query(store, "closed", where(volatile_id=1))


def test_load_prev_only_once() -> None:
    from tab_identity.records import PREV, RecordStore

    store = RecordStore()
    assert store.prev_loaded is False
    store.load_prev([_rec("a", 1, 0, "f1")])
    assert store.prev_loaded is True
    assert list(store.all(PREV)) == ["a"]
    with pytest.raises(RuntimeError):
        store.load_prev([])


def test_query_returns_every_match_in_partition_order() -> None:
    from tab_identity.query import Condition, query, where
    from tab_identity.records import CURRENT, RecordStore

    store = RecordStore()
    store.put(CURRENT, "a", _rec("a", 1, 0, "same"))
    store.put(CURRENT, "b", _rec("b", 2, 1, "other"))
    store.put(CURRENT, "c", _rec("c", 3, 0, "same"))

    assert query(store, CURRENT, where(position_index=0, fingerprint="same")) == ["a", "c"]
    assert query(store, CURRENT, (Condition("position_index", "ge", 1),)) == ["b"]
    assert query(store, CURRENT, (Condition("volatile_id", "ne", 2), Condition("position_index", "lt", 1))) == [
        "a",
        "c",
    ]
    assert query(store, CURRENT, where(fingerprint="missing")) == []


def test_condition_rejects_unknown_field_and_operator() -> None:
    from tab_identity.query import Condition

    with pytest.raises(ValueError):
        Condition("tab", "eq", 1)
    with pytest.raises(ValueError):
        Condition("volatile_id", "like", 1)


def test_identity_record_dict_roundtrip_keeps_attributes() -> None:
    from tab_identity.records import IdentityRecord

    rec = _rec("a", 4, 2, "f")
    rec.attributes["pinned"] = True
    raw = rec.to_dict()
    assert raw == {
        "guid": "a",
        "volatileId": 4,
        "positionIndex": 2,
        "fingerprint": "f",
        "attributes": {"pinned": True},
    }
    assert IdentityRecord.from_dict("a", raw) == rec


def test_remove_returns_record_and_tolerates_missing() -> None:
    from tab_identity.records import REMOVED, RecordStore

    store = RecordStore()
    store.put(REMOVED, "a", _rec("a", 1, 0, "f1"))
    assert store.remove(REMOVED, "a") is not None
    assert store.remove(REMOVED, "a") is None
    assert store.counts() == {"current": 0, "removed": 0, "prev": 0}
