"""Local WebSocket gateway for the tab identity browser extension.

Wire protocol (JSON text frames):
- extension -> gateway: {"type":"hello","extensionId",...} first, then
  {"type":"tabEvent","event":<name>,...}, {"type":"register","tab",...,"fingerprint"},
  {"type":"rpcResult","id","ok","result"|"error"} and {"type":"rpc",...} for the
  public registry API (`registry.guid`, `registry.id`, `registry.attributes.*`, ...).
- gateway -> extension: {"type":"helloAck",...}, {"type":"rpc","id","method","params"}
  (`tabs.query`, `tabs.get`, `tabs.fingerprint`) and {"type":"rpcResult",...}.

Design goals:
- One event loop: the gateway, router and registry share it, no threads.
- Tab events are handled strictly in arrival order by one worker task, so a
  handler waiting on an RPC reply never blocks the receive loop.
- Fail-closed: RPCs without a connected extension raise HostError.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .errors import ConsistencyError, HostError, RegistryError
from .registry import TabRegistry
from .router import EventRouter, TabInfo

_LOGGER = logging.getLogger("tab_identity.gateway")

GATEWAY_PROTOCOL_VERSION = "2026-10-01"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _import_websockets():
    try:
        import websockets  # type: ignore[import-not-found]

        return websockets
    except ImportError as exc:
        raise RuntimeError(
            "The extension gateway requires the 'websockets' Python package (pip install websockets)."
        ) from exc


@dataclass(frozen=True)
class ExtensionClientInfo:
    extension_id: str
    extension_version: str | None = None
    user_agent: str | None = None


class ExtensionGateway:
    """Host Tab Manager + Fingerprint Provider backed by the connected extension."""

    def __init__(
        self,
        registry: TabRegistry,
        *,
        host: str = "127.0.0.1",
        port: int = 8766,
        expected_extension_id: str | None = None,
        removal_grace: float = 1.0,
        sync_on_connect: bool = True,
    ) -> None:
        self.registry = registry
        self.host = host
        self.port = int(port)
        self.expected_extension_id = expected_extension_id
        self.sync_on_connect = sync_on_connect
        self.router = EventRouter(registry, self, self, removal_grace=removal_grace)
        registry.fatal_handler = self._set_fatal

        # NOTE: typed as Any to avoid coupling to a specific websockets connection class.
        self._server: Any | None = None
        self._ws: Any | None = None
        self._client: ExtensionClientInfo | None = None
        self._session_id: str | None = None

        self._next_id = 1
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._events: asyncio.Queue[tuple[str, dict[str, Any]]] | None = None
        self._worker: asyncio.Task[None] | None = None
        self._done: asyncio.Event | None = None
        self.fatal: BaseException | None = None

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def start(self) -> None:
        websockets = _import_websockets()
        self._events = asyncio.Queue()
        self._done = asyncio.Event()
        self._worker = asyncio.get_running_loop().create_task(self._event_worker(), name="tab-identity-events")
        self._server = await websockets.serve(
            self._handler,
            self.host,
            self.port,
            max_size=2_000_000,
            ping_interval=None,
        )
        with contextlib.suppress(Exception):
            # Port 0 binds an ephemeral port; report the real one.
            self.port = int(next(iter(self._server.sockets)).getsockname()[1])
        _LOGGER.info("gateway listening on %s:%s", self.host, self.port)

    async def stop(self) -> None:
        server = self._server
        self._server = None
        if server is not None:
            server.close()
            with contextlib.suppress(Exception):
                await server.wait_closed()
        self._fail_pending("gateway stopped")
        worker = self._worker
        self._worker = None
        if worker is not None:
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker
        if self._done is not None:
            self._done.set()

    async def serve_forever(self) -> None:
        """Block until stop() or a fatal consistency error."""
        if self._done is None:
            raise RuntimeError("gateway not started")
        await self._done.wait()
        if self.fatal is not None:
            raise self.fatal

    def status(self) -> dict[str, Any]:
        client = self._client
        return {
            "listening": self._server is not None,
            "host": self.host,
            "port": self.port,
            "connected": self._ws is not None,
            "sessionId": self._session_id,
            "pendingRpc": len(self._pending),
            "client": (
                {
                    "extensionId": client.extension_id,
                    **({"extensionVersion": client.extension_version} if client.extension_version else {}),
                    **({"userAgent": client.user_agent} if client.user_agent else {}),
                }
                if client is not None
                else None
            ),
            "registry": self.registry.status(),
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Host Tab Manager / Fingerprint Provider (outbound RPC)
    # ─────────────────────────────────────────────────────────────────────────

    async def rpc_call(self, method: str, params: dict[str, Any] | None = None) -> Any:
        ws = self._ws
        if ws is None:
            raise HostError("Extension is not connected", method=method)
        req_id = self._next_id
        self._next_id += 1
        fut: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[req_id] = fut

        msg: dict[str, Any] = {"type": "rpc", "id": req_id, "method": method}
        if params:
            msg["params"] = params
        try:
            await ws.send(json.dumps(msg))
            return await fut
        except HostError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise HostError(f"Extension RPC failed: method={method}: {exc}", method=method) from exc
        finally:
            self._pending.pop(req_id, None)

    async def query_all(self) -> list[TabInfo]:
        res = await self.rpc_call("tabs.query")
        if not isinstance(res, list):
            return []
        return [TabInfo.from_dict(t) for t in res if isinstance(t, Mapping)]

    async def get(self, volatile_id: int) -> TabInfo | None:
        res = await self.rpc_call("tabs.get", {"tabId": volatile_id})
        return TabInfo.from_dict(res) if isinstance(res, Mapping) else None

    async def fingerprint(self, volatile_id: int) -> str | None:
        res = await self.rpc_call("tabs.fingerprint", {"tabId": volatile_id})
        return res if isinstance(res, str) and res else None

    # ─────────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────────

    def _set_fatal(self, exc: ConsistencyError) -> None:
        if self.fatal is None:
            _LOGGER.error("registry consistency violated: %s", exc)
            self.fatal = exc
        if self._done is not None:
            self._done.set()

    def _fail_pending(self, reason: str) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for fut in pending:
            if not fut.done():
                fut.set_exception(HostError(reason))

    async def _handler(self, ws: Any) -> None:
        try:
            raw = await asyncio.wait_for(ws.recv(), timeout=2.5)
        except Exception:  # noqa: BLE001
            _LOGGER.warning("extension hello timeout")
            return

        try:
            hello = json.loads(raw)
        except ValueError:
            hello = None
        if not isinstance(hello, dict) or hello.get("type") != "hello":
            with contextlib.suppress(Exception):
                await ws.close(code=1002, reason="expected hello")
            return

        ext_id = str(hello.get("extensionId") or "").strip()
        if not ext_id:
            with contextlib.suppress(Exception):
                await ws.close(code=1002, reason="missing extensionId")
            return
        if self.expected_extension_id is not None and ext_id != self.expected_extension_id:
            with contextlib.suppress(Exception):
                await ws.close(code=1008, reason="unexpected extensionId")
            return

        # Replace the active client (MV3 service workers reconnect often).
        previous = self._ws
        if previous is not None and previous is not ws:
            self._fail_pending("extension reconnected")
            with contextlib.suppress(Exception):
                await previous.close(code=1000, reason="replaced")
        self._ws = ws
        self._client = ExtensionClientInfo(
            extension_id=ext_id,
            extension_version=str(hello.get("extensionVersion") or "") or None,
            user_agent=str(hello.get("userAgent") or "") or None,
        )
        self._session_id = f"tabs-{_now_ms()}-{os.getpid()}"

        try:
            await ws.send(
                json.dumps(
                    {
                        "type": "helloAck",
                        "protocolVersion": GATEWAY_PROTOCOL_VERSION,
                        "sessionId": self._session_id,
                        "registry": self.registry.status(),
                    }
                )
            )
        except Exception:  # noqa: BLE001
            self._disconnect(ws)
            return
        _LOGGER.info("extension connected id=%s", ext_id)

        # Tab ids from an earlier connection mean nothing to this one.
        self._enqueue("session", {})
        if self.sync_on_connect:
            self._enqueue("sync", {})

        try:
            async for raw_msg in ws:
                try:
                    msg = json.loads(raw_msg)
                except ValueError:
                    continue
                if isinstance(msg, dict):
                    await self._on_message(ws, msg)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.info("extension connection closed: %s", exc)
        finally:
            self._disconnect(ws)

    def _disconnect(self, ws: Any) -> None:
        if self._ws is not ws:
            return
        self._ws = None
        self._client = None
        self._session_id = None
        self._fail_pending("extension disconnected")
        # The host is gone or restarting: its last tabEvent burst is not a user closing tabs.
        self.registry.cancel_removals()
        self._enqueue("disconnected", {})
        _LOGGER.info("extension disconnected")

    def _enqueue(self, event: str, payload: dict[str, Any]) -> None:
        if self._events is not None:
            self._events.put_nowait((event, payload))

    async def _on_message(self, ws: Any, msg: dict[str, Any]) -> None:
        mtype = str(msg.get("type") or "")

        if mtype == "rpcResult":
            try:
                req_id = int(msg.get("id"))  # type: ignore[arg-type]
            except (TypeError, ValueError):
                return
            fut = self._pending.get(req_id)
            if fut is None or fut.done():
                return
            if msg.get("ok"):
                fut.set_result(msg.get("result"))
            else:
                err = msg.get("error")
                text = err.get("message") if isinstance(err, dict) else err
                fut.set_exception(HostError(str(text or "extension rpc error")))
            return

        if mtype == "tabEvent":
            self._enqueue(str(msg.get("event") or ""), msg)
            return

        if mtype in {"register", "fingerprint"}:
            self._enqueue(mtype, msg)
            return

        if mtype == "rpc":
            await self._reply(ws, msg.get("id"), self._registry_call(str(msg.get("method") or ""), msg.get("params")))
            return

    async def _reply(self, ws: Any, req_id: Any, outcome: tuple[bool, Any]) -> None:
        ok, value = outcome
        payload: dict[str, Any] = {"type": "rpcResult", "id": req_id, "ok": ok}
        payload["result" if ok else "error"] = value
        with contextlib.suppress(Exception):
            await ws.send(json.dumps(payload))

    def _registry_call(self, method: str, raw_params: Any) -> tuple[bool, Any]:
        params = raw_params if isinstance(raw_params, dict) else {}
        reg = self.registry
        try:
            if method == "registry.guid":
                return True, reg.guid(int(params.get("tabId")))
            if method == "registry.id":
                return True, reg.id(str(params.get("guid") or ""))
            if method == "registry.attributes.get":
                return True, reg.attributes.get(str(params.get("guid") or ""), str(params.get("name") or ""))
            if method == "registry.attributes.set":
                reg.attributes.set(str(params.get("guid") or ""), str(params.get("name") or ""), params.get("value"))
                return True, None
            if method == "registry.attributes.clear":
                return True, reg.attributes.clear(str(params.get("guid") or ""), str(params.get("name") or ""))
            if method == "registry.reset":
                reg.reset()
                return True, None
            if method == "registry.status":
                return True, self.status()
        except RegistryError as exc:
            return False, exc.to_dict()
        except (TypeError, ValueError) as exc:
            return False, {"error": True, "kind": "bad_request", "message": str(exc)}
        return False, {"error": True, "kind": "unknown_method", "message": f"Unknown method: {method}"}

    async def _event_worker(self) -> None:
        events = self._events
        if events is None:
            raise RuntimeError("gateway not started")
        while True:
            event, payload = await events.get()
            try:
                if event == "session":
                    self.registry.end_session()
                elif event == "disconnected":
                    self.registry.cancel_removals()
                elif event == "sync":
                    await self.router.sync()
                else:
                    await self.router.dispatch(event, payload)
            except HostError as exc:
                _LOGGER.warning("tab event %s dropped: %s", event, exc)
            except ConsistencyError as exc:
                self._set_fatal(exc)
                return
            except Exception:  # noqa: BLE001
                _LOGGER.exception("tab event %s failed", event)
