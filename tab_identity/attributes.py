from __future__ import annotations

from collections.abc import Callable
from typing import Any

from .errors import NotFoundError
from .records import CURRENT, IdentityRecord, RecordStore


class AttributeStore:
    """Per-tab annotations stored on the `current` record.

    Values travel with the record through `removed`/`prev`, so they must be
    JSON-serializable to survive a restart.
    """

    def __init__(self, store: RecordStore, persist: Callable[[], None]) -> None:
        self._store = store
        self._persist = persist

    def _record(self, guid: str) -> IdentityRecord:
        rec = self._store.get(CURRENT, guid)
        if rec is None:
            raise NotFoundError(f"No current tab with guid {guid}", guid=guid)
        return rec

    def set(self, guid: str, name: str, value: Any) -> None:
        self._record(guid).attributes[name] = value
        self._persist()

    def get(self, guid: str, name: str, default: Any = None) -> Any:
        return self._record(guid).attributes.get(name, default)

    def clear(self, guid: str, name: str) -> bool:
        """Drop `name`. Returns False if it was not set."""
        attrs = self._record(guid).attributes
        if name not in attrs:
            return False
        del attrs[name]
        self._persist()
        return True

    def all(self, guid: str) -> dict[str, Any]:
        return dict(self._record(guid).attributes)
