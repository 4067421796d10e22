"""Request/response correlation over one extension websocket.

All methods run on the gateway event loop; the loop is the single owner of the
pending table, so no lock is needed here.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .errors import BridgeError, CommandTimeout, ConnectionLost, ExtensionError, ProtocolError
from .protocol import Method, Notification, Request, parse_frame

logger = logging.getLogger("mcp.ozon.rpc")

SendFunc = Callable[[str], Awaitable[None]]
NotificationHandler = Callable[[Notification], None]


@dataclass
class PendingRequest:
    id: int
    method: Method
    params: dict[str, Any]
    created_at: float
    deadline: float
    future: asyncio.Future[Any]


class RpcChannel:
    def __init__(
        self,
        send: SendFunc,
        *,
        label: str = "extension",
        on_notification: NotificationHandler | None = None,
    ) -> None:
        self.label = label
        self._send = send
        self._on_notification = on_notification
        self._next_id = 1
        self._pending: dict[int, PendingRequest] = {}
        self._closed: BridgeError | None = None
        self.dropped_frames = 0

    @property
    def closed(self) -> bool:
        return self._closed is not None

    @property
    def pending_ids(self) -> list[int]:
        return sorted(self._pending)

    def _allocate_id(self) -> int:
        req_id = self._next_id
        while req_id in self._pending:
            req_id += 1
        self._next_id = req_id + 1
        return req_id

    async def call(self, method: Method, params: dict[str, Any] | None = None, *, timeout: float = 30.0) -> Any:
        """Send one request and wait for its correlated response."""
        if self._closed is not None:
            raise ConnectionLost(f"Connection to {self.label} is closed", details={"method": method.value})

        loop = asyncio.get_running_loop()
        now = loop.time()
        req_id = self._allocate_id()
        pending = PendingRequest(
            id=req_id,
            method=method,
            params=dict(params or {}),
            created_at=now,
            deadline=now + max(0.001, float(timeout)),
            future=loop.create_future(),
        )
        self._pending[req_id] = pending

        try:
            try:
                await self._send(Request(req_id, method, pending.params).encode())
            except Exception as exc:  # noqa: BLE001
                self._reject(pending, ConnectionLost(f"Send to {self.label} failed: {exc}", details={"method": method.value}))
            remaining = max(0.0, pending.deadline - loop.time())
            return await asyncio.wait_for(pending.future, timeout=remaining)
        except asyncio.TimeoutError as exc:
            logger.info("rpc_timeout id=%s method=%s timeout=%.1fs", req_id, method.value, timeout)
            raise CommandTimeout(
                f"Extension did not answer {method.value} within {timeout:.1f}s",
                details={"method": method.value, "id": req_id},
            ) from exc
        finally:
            self._pending.pop(req_id, None)

    def handle_frame(self, raw: str | bytes) -> None:
        try:
            frame = parse_frame(raw)
        except ProtocolError as exc:
            self.dropped_frames += 1
            logger.warning("dropping malformed frame from %s: %s", self.label, exc.message)
            return

        if isinstance(frame, Notification):
            if self._on_notification is None:
                logger.debug("ignoring notification %s (no handler)", frame.kind.value)
                return
            try:
                self._on_notification(frame)
            except BridgeError as exc:
                self.dropped_frames += 1
                logger.warning("dropping notification %s: %s", frame.kind.value, exc.message)
            return

        pending = self._pending.get(frame.id)
        if pending is None or pending.future.done():
            self.dropped_frames += 1
            logger.debug("dropping uncorrelated response id=%s from %s", frame.id, self.label)
            return

        if frame.ok:
            pending.future.set_result(frame.result)
        else:
            self._reject(
                pending,
                ExtensionError(frame.error or "Extension RPC failed", details={"method": pending.method.value}),
            )

    def close(self, reason: str = "connection closed") -> int:
        """Reject every outstanding call with ConnectionLost. Returns how many were pending."""
        if self._closed is None:
            self._closed = ConnectionLost(reason)
        rejected = 0
        for pending in list(self._pending.values()):
            if not pending.future.done():
                self._reject(pending, ConnectionLost(reason, details={"method": pending.method.value, "id": pending.id}))
                rejected += 1
        if rejected:
            logger.info("rejected %d pending call(s) on %s: %s", rejected, self.label, reason)
        return rejected

    @staticmethod
    def _reject(pending: PendingRequest, exc: BridgeError) -> None:
        if not pending.future.done():
            pending.future.set_exception(exc)


__all__ = ["PendingRequest", "RpcChannel"]
