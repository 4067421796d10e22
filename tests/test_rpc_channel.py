from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest


class _Wire:
    """Captures outbound frames; tests answer them by feeding frames back."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.arrived = asyncio.Event()

    async def send(self, text: str) -> None:
        self.sent.append(json.loads(text))
        self.arrived.set()

    async def next_request(self) -> dict[str, Any]:
        while not self.sent:
            self.arrived.clear()
            await self.arrived.wait()
        return self.sent.pop(0)


def test_concurrent_calls_get_unique_ids_and_correlate_out_of_order() -> None:
    from mcp_servers.ozon.protocol import Method
    from mcp_servers.ozon.rpc import RpcChannel

    async def _main() -> None:
        wire = _Wire()
        ch = RpcChannel(wire.send)

        first = asyncio.create_task(ch.call(Method.EVALUATE, {"script": "1"}, timeout=2))
        second = asyncio.create_task(ch.call(Method.EVALUATE, {"script": "2"}, timeout=2))
        req_a = await wire.next_request()
        req_b = await wire.next_request()
        assert req_a["id"] != req_b["id"]
        assert ch.pending_ids == sorted([req_a["id"], req_b["id"]])

        # Answer in reverse order.
        ch.handle_frame(json.dumps({"id": req_b["id"], "result": "b"}))
        ch.handle_frame(json.dumps({"id": req_a["id"], "result": "a"}))
        assert await first == "a"
        assert await second == "b"
        assert ch.pending_ids == []

    asyncio.run(_main())


def test_timeout_then_late_response_is_dropped() -> None:
    from mcp_servers.ozon.errors import CommandTimeout
    from mcp_servers.ozon.protocol import Method
    from mcp_servers.ozon.rpc import RpcChannel

    async def _main() -> None:
        wire = _Wire()
        ch = RpcChannel(wire.send)
        with pytest.raises(CommandTimeout) as exc:
            await ch.call(Method.EVALUATE, {"script": "while(true){}"}, timeout=0.05)
        assert exc.value.code == "timeout"
        req = wire.sent[0]
        assert exc.value.details == {"method": "evaluate", "id": req["id"]}
        assert ch.pending_ids == []

        ch.handle_frame(json.dumps({"id": req["id"], "result": 42}))
        assert ch.dropped_frames == 1

    asyncio.run(_main())


def test_error_response_rejects_with_extension_error() -> None:
    from mcp_servers.ozon.errors import ExtensionError
    from mcp_servers.ozon.protocol import Method
    from mcp_servers.ozon.rpc import RpcChannel

    async def _main() -> None:
        wire = _Wire()
        ch = RpcChannel(wire.send)
        task = asyncio.create_task(ch.call(Method.INTERACT, {"actions": []}, timeout=2))
        req = await wire.next_request()
        ch.handle_frame(json.dumps({"id": req["id"], "error": {"message": "Element not found: #nope"}}))
        with pytest.raises(ExtensionError) as exc:
            await task
        assert exc.value.message == "Element not found: #nope"
        assert exc.value.details == {"method": "interact"}

    asyncio.run(_main())


def test_close_rejects_every_pending_call_once() -> None:
    from mcp_servers.ozon.errors import ConnectionLost
    from mcp_servers.ozon.protocol import Method
    from mcp_servers.ozon.rpc import RpcChannel

    async def _main() -> None:
        wire = _Wire()
        ch = RpcChannel(wire.send)
        tasks = [asyncio.create_task(ch.call(Method.EVALUATE, {"script": str(i)}, timeout=5)) for i in range(3)]
        for _ in tasks:
            await wire.next_request()

        assert ch.close("socket dropped") == 3
        # A second close finds nothing left to reject.
        assert ch.close("socket dropped") == 0

        results = await asyncio.gather(*tasks, return_exceptions=True)
        assert all(isinstance(r, ConnectionLost) for r in results)
        assert all(r.message == "socket dropped" for r in results)

        with pytest.raises(ConnectionLost):
            await ch.call(Method.EVALUATE, {"script": "late"})

    asyncio.run(_main())


def test_failed_send_rejects_with_connection_lost() -> None:
    from mcp_servers.ozon.errors import ConnectionLost
    from mcp_servers.ozon.protocol import Method
    from mcp_servers.ozon.rpc import RpcChannel

    async def _broken_send(text: str) -> None:
        raise OSError("broken pipe")

    async def _main() -> None:
        ch = RpcChannel(_broken_send)
        with pytest.raises(ConnectionLost) as exc:
            await ch.call(Method.EVALUATE, {"script": "1"}, timeout=1)
        assert "broken pipe" in exc.value.message
        assert ch.pending_ids == []

    asyncio.run(_main())


def test_uncorrelated_and_malformed_frames_are_dropped_and_notifications_routed() -> None:
    from mcp_servers.ozon.errors import ProtocolError
    from mcp_servers.ozon.protocol import Notification, NotificationKind
    from mcp_servers.ozon.rpc import RpcChannel

    seen: list[Notification] = []

    def _on_note(note: Notification) -> None:
        if note.kind is NotificationKind.TAB_ATTACHED and "tabId" not in note.params:
            raise ProtocolError("tabAttached without tabId")
        seen.append(note)

    async def _noop_send(text: str) -> None:
        return None

    ch = RpcChannel(_noop_send, on_notification=_on_note)
    ch.handle_frame('{"id": 99, "result": 1}')
    ch.handle_frame("{{{")
    ch.handle_frame('{"method": "tabAttached", "params": {}}')
    ch.handle_frame('{"method": "tabAttached", "params": {"tabId": 12}}')

    assert ch.dropped_frames == 3
    assert [n.params for n in seen] == [{"tabId": 12}]
