"""Translate host tab notifications into registry operations.

Every handler may suspend (fingerprint fetch, host query). Registry state is
re-read after each await; nothing fetched before a suspension point is trusted
afterwards.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from .fingerprint import FingerprintProvider, resolve_fingerprint
from .matcher import Reconciliation
from .records import UNPLACED, Observation
from .registry import TabRegistry

_LOGGER = logging.getLogger("tab_identity.router")

# chrome.tabs.TAB_ID_NONE: placeholder id for surfaces that are not real tabs.
TAB_ID_NONE = -1

# onUpdated keys that do not change what a tab has loaded.
_COSMETIC_CHANGES = frozenset(
    {"title", "favIconUrl", "audible", "mutedInfo", "discarded", "autoDiscardable", "groupId", "pinned"}
)


@dataclass(frozen=True)
class TabInfo:
    volatile_id: int
    index: int = UNPLACED
    url: str = ""
    window_id: int | None = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> TabInfo:
        def _int(value: Any, default: int) -> int:
            try:
                return int(value)
            except (TypeError, ValueError):
                return default

        window = raw.get("windowId")
        return cls(
            volatile_id=_int(raw.get("id"), TAB_ID_NONE),
            index=_int(raw.get("index"), UNPLACED),
            url=str(raw.get("url") or raw.get("pendingUrl") or ""),
            window_id=_int(window, TAB_ID_NONE) if window is not None else None,
        )


class HostTabManager(Protocol):
    async def query_all(self) -> list[TabInfo]: ...

    async def get(self, volatile_id: int) -> TabInfo | None: ...


def is_valid_tab_id(volatile_id: Any) -> bool:
    return isinstance(volatile_id, int) and not isinstance(volatile_id, bool) and volatile_id >= 0


class EventRouter:
    def __init__(
        self,
        registry: TabRegistry,
        host: HostTabManager,
        fingerprints: FingerprintProvider,
        *,
        removal_grace: float = 1.0,
    ) -> None:
        self.registry = registry
        self.host = host
        self.fingerprints = fingerprints
        self.removal_grace = removal_grace

    def _accept(self, volatile_id: Any, event: str) -> bool:
        if is_valid_tab_id(volatile_id):
            return True
        _LOGGER.info("ignored %s for non-tab volatile_id=%r", event, volatile_id)
        return False

    async def on_created(self, tab: TabInfo) -> Reconciliation | None:
        if not self._accept(tab.volatile_id, "created"):
            return None
        fp = await resolve_fingerprint(tab, self.fingerprints)
        return self.registry.observe(Observation(tab.volatile_id, tab.index, fp))

    async def on_updated(
        self, volatile_id: int, change_info: Mapping[str, Any] | None, tab: TabInfo
    ) -> Reconciliation | None:
        if not self._accept(volatile_id, "updated"):
            return None
        changes = dict(change_info or {})
        if changes and set(changes) <= _COSMETIC_CHANGES:
            return None
        if changes.get("status") == "loading" and "url" not in changes:
            return None
        return await self.on_created(tab)

    async def on_position_change(self, *_args: Any) -> int:
        """moved / attached / detached: re-read true positions from the host."""
        tabs = await self.host.query_all()
        positions = {t.volatile_id: t.index for t in tabs if is_valid_tab_id(t.volatile_id)}
        return self.registry.update_positions(positions)

    on_moved = on_position_change
    on_attached = on_position_change
    on_detached = on_position_change

    def on_removed(self, volatile_id: int, info: Mapping[str, Any] | None = None) -> asyncio.Task[None] | None:
        if not self._accept(volatile_id, "removed"):
            return None
        if info and info.get("isWindowClosing"):
            _LOGGER.debug("removed volatile_id=%s while window closing", volatile_id)
        return self.registry.schedule_removal(volatile_id, self.removal_grace)

    def on_replaced(self, added_volatile_id: int, removed_volatile_id: int) -> str | None:
        if not (self._accept(added_volatile_id, "replaced") and self._accept(removed_volatile_id, "replaced")):
            return None
        return self.registry.replace(removed_volatile_id, added_volatile_id)

    async def on_content_report(self, tab: TabInfo, fingerprint: str) -> str | None:
        """A content script pushed its own fingerprint (`register`)."""
        if not self._accept(tab.volatile_id, "content report"):
            return None
        if tab.index < 0:
            fresh = await self.host.get(tab.volatile_id)
            if fresh is not None:
                tab = fresh
        known = self.registry.refresh_fingerprint(tab.volatile_id, fingerprint)
        if known is not None:
            return known
        result = self.registry.observe(Observation(tab.volatile_id, tab.index, fingerprint))
        return result.guid if result is not None else None

    async def sync(self) -> list[Reconciliation]:
        """Reconcile every tab the host currently has open."""
        tabs = await self.host.query_all()
        out: list[Reconciliation] = []
        for tab in tabs:
            res = await self.on_created(tab)
            if res is not None:
                out.append(res)
        # Host positions override the per-insert shifts applied above.
        self.registry.update_positions({t.volatile_id: t.index for t in tabs if is_valid_tab_id(t.volatile_id)})
        return out

    async def dispatch(self, event: str, payload: Mapping[str, Any]) -> Any:
        """Route a wire-level tab event (`created`, `removed`, ...) to its handler."""
        name = (event or "").strip()
        raw_tab = payload.get("tab")
        tab = TabInfo.from_dict(raw_tab) if isinstance(raw_tab, Mapping) else None

        if name == "created" and tab is not None:
            return await self.on_created(tab)
        if name == "updated" and tab is not None:
            return await self.on_updated(tab.volatile_id, payload.get("changeInfo"), tab)
        if name in {"moved", "attached", "detached"}:
            return await self.on_position_change()
        if name == "removed":
            return self.on_removed(payload.get("tabId"), payload.get("info"))
        if name == "replaced":
            return self.on_replaced(payload.get("addedTabId"), payload.get("removedTabId"))
        if name in {"register", "fingerprint"} and tab is not None:
            fp = payload.get("fingerprint")
            if isinstance(fp, str) and fp:
                return await self.on_content_report(tab, fp)
            return await self.on_created(tab)

        _LOGGER.debug("unhandled tab event %s", name)
        return None
