from __future__ import annotations

import asyncio
import contextlib
import json
import socket
import threading
import time
from collections.abc import Callable
from typing import Any

import pytest

websockets = pytest.importorskip("websockets")

from mcp_servers.ozon.actions import Evaluate  # noqa: E402
from mcp_servers.ozon.backend import CommandDispatcher  # noqa: E402
from mcp_servers.ozon.config import BridgeConfig  # noqa: E402
from mcp_servers.ozon.errors import BindError, ConnectionLost, NoConnection  # noqa: E402
from mcp_servers.ozon.extension_gateway import ExtensionGateway  # noqa: E402
from mcp_servers.ozon.stealth import StealthCoordinator  # noqa: E402


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


def _wait_until(pred: Callable[[], bool], timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pred():
            return True
        time.sleep(0.02)
    return pred()


class _ExtensionStub:
    """Minimal extension: says hello, optionally attaches a tab, answers requests."""

    def __init__(self, port: int, *, tab_id: Any = None, silent: set[str] | None = None) -> None:
        self.port = port
        self.tab_id = tab_id
        self.silent = silent or set()
        self.requests: list[tuple[str, dict[str, Any], float]] = []
        self.connected = threading.Event()
        self.closed = threading.Event()
        self._stop = threading.Event()
        self._thread = threading.Thread(target=lambda: asyncio.run(self._main()), daemon=True)

    def start(self) -> _ExtensionStub:
        self._thread.start()
        assert self.connected.wait(3.0), "stub failed to connect"
        return self

    def stop(self) -> None:
        self._stop.set()
        self._thread.join(timeout=3.0)

    def methods(self) -> list[str]:
        return [m for m, _, _ in self.requests]

    def _reply(self, method: str, params: dict[str, Any]) -> dict[str, Any] | None:
        if method in self.silent:
            return None
        if method == "getConnectionStatus":
            return {"result": {"connected": True, "tabId": self.tab_id, "stealthMode": True}}
        if method == "evaluate":
            if params.get("script") == "1+1":
                return {"result": 2}
            return {"error": {"message": f"ReferenceError: {params.get('script')} is not defined"}}
        if method == "interact":
            return {"result": {"success": True}}
        return {"error": {"message": f"unknown method {method}"}}

    async def _main(self) -> None:
        try:
            async with websockets.connect(f"ws://127.0.0.1:{self.port}", ping_interval=None) as ws:
                await ws.send(json.dumps({"method": "hello", "params": {"extensionVersion": "1.0.0", "projectName": "ozon"}}))
                if self.tab_id is not None:
                    await ws.send(json.dumps({"method": "tabAttached", "params": {"tabId": self.tab_id}}))
                self.connected.set()
                with contextlib.suppress(websockets.ConnectionClosed):
                    while not self._stop.is_set():
                        try:
                            raw = await asyncio.wait_for(ws.recv(), timeout=0.1)
                        except asyncio.TimeoutError:
                            continue
                        msg = json.loads(raw)
                        params = msg.get("params") or {}
                        self.requests.append((msg["method"], params, time.monotonic()))
                        reply = self._reply(msg["method"], params)
                        if reply is not None:
                            await ws.send(json.dumps({"id": msg["id"], **reply}))
        finally:
            self.closed.set()


def _in_thread(fn: Callable[[], Any]) -> tuple[threading.Thread, dict[str, Any]]:
    box: dict[str, Any] = {}

    def _run() -> None:
        try:
            box["value"] = fn()
        except Exception as exc:  # noqa: BLE001
            box["error"] = exc

    t = threading.Thread(target=_run, daemon=True)
    t.start()
    return t, box


def test_start_fails_with_bind_error_when_port_is_taken() -> None:
    port = _free_port()
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("127.0.0.1", port))
    blocker.listen(1)
    gw = ExtensionGateway(host="127.0.0.1", port=port)
    try:
        with pytest.raises(BindError) as exc:
            gw.start(wait_timeout=3.0)
        assert exc.value.details == {"host": "127.0.0.1", "port": port}
        assert gw.listening is False
    finally:
        blocker.close()
        gw.stop()


def test_start_twice_is_rejected() -> None:
    gw = ExtensionGateway(host="127.0.0.1", port=0)
    gw.start()
    try:
        assert gw.listening
        assert gw.port != 0
        with pytest.raises(RuntimeError):
            gw.start()
    finally:
        gw.stop()
    assert gw.listening is False
    # Stopping again is a no-op.
    gw.stop()


def test_commands_require_a_bound_tab() -> None:
    gw = ExtensionGateway(host="127.0.0.1", port=0, probe_timeout=0.5)
    gw.start()
    dispatcher = CommandDispatcher(gw, command_timeout=2.0)
    stub = None
    try:
        with pytest.raises(NoConnection) as exc:
            dispatcher.evaluate_sync("1+1")
        assert "not connected" in exc.value.message

        stub = _ExtensionStub(gw.port).start()
        assert _wait_until(lambda: gw.status()["connected"])
        assert _wait_until(lambda: gw.status()["projectName"] == "ozon")
        assert gw.status()["tabId"] is None
        with pytest.raises(NoConnection) as exc:
            dispatcher.evaluate_sync("1+1")
        assert "no tab is bound" in exc.value.message
    finally:
        if stub is not None:
            stub.stop()
        gw.stop()


def test_bound_tab_snapshot_stealth_and_evaluate_roundtrip() -> None:
    stealth = StealthCoordinator(enabled=True)
    gw = ExtensionGateway(host="127.0.0.1", port=0, stealth=stealth)
    gw.start()
    dispatcher = CommandDispatcher(gw, command_timeout=2.0)
    stub = _ExtensionStub(gw.port, tab_id=42).start()
    try:
        assert gw.wait_for_binding(timeout=3.0)
        assert gw.status()["tabId"] == 42

        assert dispatcher.evaluate_sync("1+1") == 2
        assert stub.methods()[-2:] == ["getConnectionStatus", "evaluate"]
        assert set(stub.methods()) <= {"getConnectionStatus", "evaluate"}
        st = gw.status()
        assert st == {"connected": True, "tabId": 42, "stealthMode": True, "projectName": "ozon"}

        result = dispatcher.execute_sync(Evaluate("nope"))
        assert result.is_error
        assert result.data["details"]["error"] == "evaluation_error"
        assert "ReferenceError" in result.data["error"]
    finally:
        stub.stop()
        gw.stop()

    assert _wait_until(lambda: not gw.status()["connected"])
    assert gw.status()["tabId"] is None


def test_newer_connection_replaces_older_and_rejects_its_pending_calls() -> None:
    gw = ExtensionGateway(host="127.0.0.1", port=0, probe_timeout=0.5)
    gw.start()
    dispatcher = CommandDispatcher(gw, command_timeout=10.0)
    first = _ExtensionStub(gw.port, tab_id=1, silent={"evaluate"}).start()
    second = None
    try:
        assert gw.wait_for_binding(timeout=3.0)
        t, box = _in_thread(lambda: dispatcher.evaluate_sync("1+1"))
        assert _wait_until(lambda: "evaluate" in first.methods())

        second = _ExtensionStub(gw.port).start()
        t.join(timeout=3.0)
        assert isinstance(box.get("error"), ConnectionLost)

        assert first.closed.wait(3.0)
        assert _wait_until(lambda: gw.status()["connected"])
        # The replacement has not bound a tab yet.
        assert gw.status()["tabId"] is None
        assert not gw.is_bound()
    finally:
        first.stop()
        if second is not None:
            second.stop()
        gw.stop()


def test_stop_rejects_in_flight_commands() -> None:
    gw = ExtensionGateway(host="127.0.0.1", port=0)
    gw.start()
    dispatcher = CommandDispatcher(gw, command_timeout=10.0)
    stub = _ExtensionStub(gw.port, tab_id=5, silent={"evaluate"}).start()
    try:
        assert gw.wait_for_binding(timeout=3.0)
        t, box = _in_thread(lambda: dispatcher.evaluate_sync("1+1"))
        assert _wait_until(lambda: "evaluate" in stub.methods())
        gw.stop()
        t.join(timeout=3.0)
        assert isinstance(box.get("error"), ConnectionLost)
        assert gw.status()["connected"] is False
    finally:
        stub.stop()
        gw.stop()

    with pytest.raises(NoConnection):
        dispatcher.evaluate_sync("1+1")


def test_command_timeout_when_extension_stays_silent() -> None:
    from mcp_servers.ozon.errors import CommandTimeout

    gw = ExtensionGateway(host="127.0.0.1", port=0)
    gw.start()
    dispatcher = CommandDispatcher(gw, command_timeout=0.3)
    stub = _ExtensionStub(gw.port, tab_id=5, silent={"evaluate"}).start()
    try:
        assert gw.wait_for_binding(timeout=3.0)
        with pytest.raises(CommandTimeout):
            dispatcher.evaluate_sync("1+1")
        # The connection survives a timeout.
        assert gw.status()["connected"] is True
    finally:
        stub.stop()
        gw.stop()


# ═══════════════════════════════════════════════════════════════════════════════
# END-TO-END THROUGH THE MCP SERVER
# ═══════════════════════════════════════════════════════════════════════════════


def _server(tmp_path: Any, **overrides: Any) -> Any:
    from mcp_servers.ozon.main import McpServer

    cfg = BridgeConfig(
        host="127.0.0.1",
        port=0,
        connect_timeout=overrides.pop("connect_timeout", 0.0),
        selectors_path=str(tmp_path / "missing.json"),
        humanize_scale=0.0,
        **overrides,
    )
    return McpServer(cfg)


def test_tool_call_without_extension_reports_no_connection(tmp_path: Any) -> None:
    server = _server(tmp_path)
    server.start()
    try:
        result = server.call_tool("browser_evaluate", {"script": "1+1"})
        assert result.is_error
        assert result.to_wire()["isError"] is True
        assert result.data["details"]["error"] == "no_connection"
        assert result.data["error"] == "Extension is not connected"
    finally:
        server.shutdown()


def test_interact_sequence_through_server(tmp_path: Any) -> None:
    server = _server(tmp_path, connect_timeout=3.0)
    server.start()
    stub = _ExtensionStub(server.gateway.port, tab_id=9).start()
    try:
        result = server.call_tool(
            "browser_interact",
            {
                "actions": [
                    {"type": "click", "selector": "#search"},
                    {"type": "wait", "timeout": 100},
                    {"type": "type", "selector": "#search", "text": "abc"},
                ]
            },
        )
        assert not result.is_error, result.content[0].text
        assert result.data == {"completed": 3, "results": [{"success": True}, {"waitedMs": 100}, {"success": True}]}

        sent = [(params["actions"][0], ts) for method, params, ts in stub.requests if method == "interact"]
        assert [a["type"] for a, _ in sent] == ["click", "type"]
        assert sent[0][0] == {"type": "click", "selector": "#search", "clickCount": 1}
        assert sent[1][0] == {"type": "type", "selector": "#search", "text": "abc"}
        assert sent[1][1] - sent[0][1] >= 0.095
        methods = stub.methods()
        assert methods[methods.index("interact") - 1] == "getConnectionStatus"

        status = server.call_tool("browser_status", {})
        assert status.data["tabId"] == 9
        assert status.data["listening"] is True
    finally:
        stub.stop()
        server.shutdown()


def test_default_stealth_config_runs_repeated_evaluates(tmp_path: Any) -> None:
    server = _server(tmp_path, connect_timeout=3.0)
    assert server.config.stealth_mode is True
    server.start()
    stub = _ExtensionStub(server.gateway.port, tab_id=11).start()
    try:
        for _ in range(3):
            result = server.call_tool("browser_evaluate", {"script": "1+1"})
            assert not result.is_error, result.content[0].text
            assert result.data == 2

        methods = stub.methods()
        assert methods.count("evaluate") == 3
        assert set(methods) <= {"getConnectionStatus", "evaluate", "interact"}
        assert server.call_tool("browser_status", {}).data["stealthMode"] is True
    finally:
        stub.stop()
        server.shutdown()
