from __future__ import annotations

import asyncio
import concurrent.futures
import contextlib
import logging
import threading
import time
from collections.abc import Coroutine
from enum import Enum
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed

from .config import DEFAULT_HOST, DEFAULT_PORT
from .errors import BindError, BridgeError, NoConnection, ProtocolError
from .protocol import Method, Notification, NotificationKind
from .rpc import RpcChannel
from .stealth import StealthCoordinator

logger = logging.getLogger("mcp.ozon.gateway")


def _now_ms() -> int:
    return int(time.time() * 1000)


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    TAB_BOUND = "tab-bound"
    DISCONNECTED = "disconnected"


_TRANSITIONS: dict[ConnectionState, set[ConnectionState]] = {
    ConnectionState.CONNECTING: {ConnectionState.CONNECTED, ConnectionState.DISCONNECTED},
    ConnectionState.CONNECTED: {ConnectionState.TAB_BOUND, ConnectionState.DISCONNECTED},
    ConnectionState.TAB_BOUND: {ConnectionState.TAB_BOUND, ConnectionState.CONNECTED, ConnectionState.DISCONNECTED},
    ConnectionState.DISCONNECTED: set(),
}


class ExtensionConnection:
    """One accepted extension websocket and the session state it reports."""

    def __init__(self, ws: Any, conn_id: int, gateway: ExtensionGateway) -> None:
        self.ws = ws
        self.conn_id = conn_id
        self.state = ConnectionState.CONNECTING
        self.tab_id: Any | None = None
        self.stealth_mode: bool | None = None
        self.project_name: str | None = None
        self.extension_version: str | None = None
        self.connected_at_ms = _now_ms()
        self.channel = RpcChannel(
            self._send,
            label=f"extension#{conn_id}",
            on_notification=lambda n: gateway._on_notification(self, n),  # noqa: SLF001
        )

    async def _send(self, text: str) -> None:
        await self.ws.send(text)

    @property
    def is_live(self) -> bool:
        return self.state in {ConnectionState.CONNECTED, ConnectionState.TAB_BOUND}

    @property
    def is_bound(self) -> bool:
        return self.state is ConnectionState.TAB_BOUND

    def _move(self, new: ConnectionState) -> None:
        if new not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"invalid connection transition {self.state.value} -> {new.value}")
        logger.debug("connection #%s %s -> %s", self.conn_id, self.state.value, new.value)
        self.state = new

    def mark_connected(self) -> None:
        self._move(ConnectionState.CONNECTED)

    def bind(self, tab_id: Any) -> bool:
        """Bind to `tab_id`. Returns True when the bound tab changed."""
        if not self.is_live:
            return False
        changed = self.tab_id != tab_id or not self.is_bound
        self._move(ConnectionState.TAB_BOUND)
        self.tab_id = tab_id
        return changed

    def unbind(self) -> bool:
        if not self.is_bound:
            return False
        self._move(ConnectionState.CONNECTED)
        self.tab_id = None
        self.stealth_mode = None
        return True

    def teardown(self, reason: str) -> int:
        if self.state is not ConnectionState.DISCONNECTED:
            self._move(ConnectionState.DISCONNECTED)
        self.tab_id = None
        return self.channel.close(reason)


class ExtensionGateway:
    """Local websocket registry for the browser extension.

    - Async server internally, running in a dedicated daemon thread.
    - Sync snapshot (`status`) and sync scheduling (`submit` / `run`) for the tool layer.
    - At most one live extension connection: a newer socket replaces the older one and
      the older one's pending calls are rejected with ConnectionLost.
    - Commands are refused unless a tab is bound.
    """

    def __init__(
        self,
        *,
        host: str | None = None,
        port: int | None = None,
        stealth: StealthCoordinator | None = None,
        command_timeout: float = 30.0,
        probe_timeout: float = 5.0,
    ) -> None:
        self.host = (host or DEFAULT_HOST).strip() or DEFAULT_HOST
        self.port = DEFAULT_PORT if port is None else int(port)
        self.stealth = stealth or StealthCoordinator(enabled=False)
        self.command_timeout = command_timeout
        self.probe_timeout = probe_timeout

        self._lock = threading.Lock()
        self._ready = threading.Event()
        self._bound = threading.Event()
        self._started = False
        self._stopped = False
        self._bind_error: BindError | None = None

        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._stop_event: asyncio.Event | None = None
        self._server: Any | None = None

        # Owned by the event loop thread.
        self._current: ExtensionConnection | None = None
        self._next_conn_id = 1
        self._background: set[asyncio.Task[Any]] = set()

        # Published copy for readers on other threads.
        self._snapshot: dict[str, Any] = {
            "connected": False,
            "tabId": None,
            "stealthMode": None,
            "projectName": None,
        }
        self._listening = False

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def start(self, *, wait_timeout: float = 5.0) -> None:
        with self._lock:
            if self._started:
                raise RuntimeError("ExtensionGateway.start() may only be called once")
            self._started = True

        t = threading.Thread(target=self._run_thread, name="ozon-extension-gateway", daemon=True)
        self._thread = t
        t.start()

        if not self._ready.wait(timeout=max(0.05, float(wait_timeout))):
            raise BindError(f"Extension gateway did not start on {self.host}:{self.port}")
        if self._bind_error is not None:
            t.join(timeout=wait_timeout)
            raise self._bind_error

    def stop(self, *, timeout: float = 2.0) -> None:
        with self._lock:
            if self._stopped or not self._started:
                self._stopped = True
                return
            self._stopped = True

        loop = self._loop
        stop_event = self._stop_event
        if loop is not None and stop_event is not None and not loop.is_closed():
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(stop_event.set)

        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout=timeout)
        logger.info("gateway stopped")

    @property
    def listening(self) -> bool:
        with self._lock:
            return self._listening

    def status(self) -> dict[str, Any]:
        with self._lock:
            return dict(self._snapshot)

    def diagnostics(self) -> dict[str, Any]:
        with self._lock:
            snapshot = dict(self._snapshot)
            listening = self._listening
        return {
            **snapshot,
            "listening": listening,
            "host": self.host,
            "port": self.port,
            "stealthRequested": self.stealth.enabled,
        }

    def is_connected(self) -> bool:
        with self._lock:
            return bool(self._snapshot["connected"])

    def is_bound(self) -> bool:
        return self._bound.is_set()

    def wait_for_binding(self, *, timeout: float = 2.0) -> bool:
        """Block until a tab is bound or timeout."""
        return self._bound.wait(timeout=max(0.0, float(timeout)))

    def submit(self, coro: Coroutine[Any, Any, Any]) -> concurrent.futures.Future[Any]:
        """Schedule a coroutine on the gateway loop from another thread."""
        loop = self._loop
        if loop is None or loop.is_closed() or self._stopped:
            coro.close()
            raise NoConnection("Extension gateway is not running")
        return asyncio.run_coroutine_threadsafe(coro, loop)

    def run(self, coro: Coroutine[Any, Any, Any], *, timeout: float | None = None) -> Any:
        return self.submit(coro).result(timeout=timeout)

    # ─────────────────────────────────────────────────────────────────────────
    # Commands (event loop side)
    # ─────────────────────────────────────────────────────────────────────────

    def bound_tab_id(self) -> Any | None:
        conn = self._current
        return conn.tab_id if conn is not None and conn.is_bound else None

    def require_bound(self, action: str) -> ExtensionConnection:
        """Current connection with a bound tab, or NoConnection naming `action`."""
        conn = self._current
        if conn is None or not conn.is_live:
            raise NoConnection(
                "Extension is not connected. Open the target tab and enable the extension, then retry.",
                details={"method": action},
            )
        if not conn.is_bound:
            raise NoConnection(
                "Extension is connected but no tab is bound. Connect the target tab from the extension popup.",
                details={"method": action},
            )
        return conn

    async def send_command(self, method: Method, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> Any:
        conn = self.require_bound(method.value)
        return await conn.channel.call(method, params, timeout=timeout or self.command_timeout)

    def note_stealth_mode(self, flag: bool | None) -> None:
        conn = self._current
        if conn is None or flag is None:
            return
        conn.stealth_mode = flag
        self._publish()

    # ─────────────────────────────────────────────────────────────────────────
    # Internals (async)
    # ─────────────────────────────────────────────────────────────────────────

    def _run_thread(self) -> None:
        asyncio.run(self._run_async())

    async def _run_async(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        try:
            self._server = await websockets.serve(
                self._handle_socket,
                self.host,
                self.port,
                max_size=8_000_000,
                ping_interval=None,
            )
        except OSError as exc:
            self._bind_error = BindError(
                f"Cannot listen on {self.host}:{self.port}: {exc}",
                details={"host": self.host, "port": self.port},
            )
            logger.error("gateway bind failed: %s", exc)
            self._ready.set()
            return

        if self.port == 0:
            with contextlib.suppress(Exception):
                self.port = int(next(iter(self._server.sockets)).getsockname()[1])
        with self._lock:
            self._listening = True
        logger.info("gateway listening on %s:%s", self.host, self.port)
        self._ready.set()

        try:
            await self._stop_event.wait()
        finally:
            await self._shutdown_async()

    async def _shutdown_async(self) -> None:
        srv = self._server
        self._server = None
        conn = self._current
        if conn is not None:
            self._drop(conn, "bridge shutting down")
            with contextlib.suppress(Exception):
                await conn.ws.close(code=1001, reason="bridge shutting down")
        if srv is not None:
            srv.close()
            with contextlib.suppress(Exception):
                await srv.wait_closed()
        with self._lock:
            self._listening = False

    async def _handle_socket(self, ws: Any) -> None:
        conn = ExtensionConnection(ws, self._next_conn_id, self)
        self._next_conn_id += 1

        previous = self._current
        if previous is not None:
            logger.warning("extension connection #%s replaced by #%s", previous.conn_id, conn.conn_id)
            self._drop(previous, "replaced by a newer extension connection")
            self._spawn(self._close_quietly(previous.ws, "replaced"))

        self._current = conn
        conn.mark_connected()
        self._publish()
        logger.info("extension connected #%s", conn.conn_id)
        probe = self._spawn(self._probe_status(conn))

        try:
            async for raw in ws:
                conn.channel.handle_frame(raw)
        except ConnectionClosed as exc:
            logger.info("extension connection #%s closed: %s", conn.conn_id, exc)
        finally:
            probe.cancel()
            self._drop(conn, "extension disconnected")

    def _drop(self, conn: ExtensionConnection, reason: str) -> None:
        conn.teardown(reason)
        if self._current is conn:
            self._current = None
            self.stealth.reset()
            self._publish()
            logger.info("extension disconnected #%s (%s)", conn.conn_id, reason)

    async def _close_quietly(self, ws: Any, reason: str) -> None:
        with contextlib.suppress(Exception):
            await ws.close(code=1000, reason=reason)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _probe_status(self, conn: ExtensionConnection) -> None:
        try:
            result = await conn.channel.call(Method.GET_CONNECTION_STATUS, {}, timeout=self.probe_timeout)
        except BridgeError as exc:
            logger.debug("status probe on #%s failed: %s", conn.conn_id, exc.message)
            return
        if isinstance(result, dict) and conn is self._current:
            self._apply_status(conn, result)
            self._publish()

    def _on_notification(self, conn: ExtensionConnection, note: Notification) -> None:
        if conn is not self._current:
            logger.debug("ignoring %s from stale connection #%s", note.kind.value, conn.conn_id)
            return
        params = note.params
        if note.kind is NotificationKind.HELLO:
            version = params.get("extensionVersion")
            conn.extension_version = str(version) if version else None
            if isinstance(params.get("projectName"), str):
                conn.project_name = params["projectName"]
        elif note.kind is NotificationKind.STATUS_CHANGED:
            self._apply_status(conn, params)
        elif note.kind is NotificationKind.TAB_ATTACHED:
            tab_id = params.get("tabId")
            if tab_id is None:
                raise ProtocolError("tabAttached without tabId")
            self._bind(conn, tab_id)
            if isinstance(params.get("stealthMode"), bool):
                conn.stealth_mode = params["stealthMode"]
        elif note.kind is NotificationKind.TAB_DETACHED:
            if conn.unbind():
                self.stealth.reset()
        self._publish()

    def _apply_status(self, conn: ExtensionConnection, data: dict[str, Any]) -> None:
        if "tabId" in data or "connectedTabId" in data:
            tab_id = data.get("tabId", data.get("connectedTabId"))
            if tab_id is None:
                if conn.unbind():
                    self.stealth.reset()
            else:
                self._bind(conn, tab_id)
        if isinstance(data.get("stealthMode"), bool) and conn.is_bound:
            conn.stealth_mode = data["stealthMode"]
        if "projectName" in data:
            name = data["projectName"]
            conn.project_name = name if isinstance(name, str) and name else None

    def _bind(self, conn: ExtensionConnection, tab_id: Any) -> None:
        if conn.bind(tab_id):
            conn.stealth_mode = None
            self.stealth.reset()
            logger.info("extension #%s bound tab %s", conn.conn_id, tab_id)

    def _publish(self) -> None:
        conn = self._current
        live = conn is not None and conn.is_live
        snapshot = {
            "connected": live,
            "tabId": conn.tab_id if live and conn.is_bound else None,
            "stealthMode": conn.stealth_mode if live and conn.is_bound else None,
            "projectName": conn.project_name if live else None,
        }
        with self._lock:
            self._snapshot = snapshot
        if snapshot["tabId"] is not None:
            self._bound.set()
        else:
            self._bound.clear()


__all__ = ["ConnectionState", "ExtensionConnection", "ExtensionGateway"]
