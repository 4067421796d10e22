"""Command dispatcher: the only entry point tools use to act on the bound tab.

Two primitives, `evaluate` and `interact`, both serialized through one FIFO
asyncio lock so scripts and simulated input never interleave on the page.
Coroutines run on the gateway loop; the `*_sync` facades are for the synchronous
tool layer.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from collections.abc import Coroutine, Iterable
from typing import Any

from .actions import Command, Evaluate, Interact, InteractionAction, Wait
from .errors import (
    ActionError,
    BridgeError,
    ConnectionLost,
    EvaluationError,
    ExtensionError,
    InvalidArguments,
)
from .extension_gateway import ExtensionGateway
from .protocol import Method
from .server.types import ToolResult
from .stealth import StealthCoordinator

logger = logging.getLogger("mcp.ozon.backend")


def _action_failure(result: Any) -> str | None:
    """Failure message when the extension answered but reports the action failed."""
    if not isinstance(result, dict):
        return None
    if result.get("success") is False or result.get("ok") is False:
        msg = result.get("error") or result.get("message")
        return str(msg) if msg else "action failed"
    return None


class CommandDispatcher:
    def __init__(
        self,
        gateway: ExtensionGateway,
        *,
        stealth: StealthCoordinator | None = None,
        command_timeout: float | None = None,
    ) -> None:
        self.gateway = gateway
        self.stealth = stealth or gateway.stealth
        self.command_timeout = command_timeout
        self._lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def _send(self, method: Method, params: dict[str, Any], *, timeout: float | None = None) -> Any:
        return await self.gateway.send_command(method, params, timeout=timeout or self.command_timeout)

    async def _prepare(self, action: str) -> None:
        """Fail fast unless a tab is bound, then confirm stealth for it once."""
        self.gateway.require_bound(action)
        tab_id = self.gateway.bound_tab_id()
        reported = await self.stealth.ensure_armed(tab_id, self._send)
        if reported is not None:
            self.gateway.note_stealth_mode(reported)

    async def evaluate(self, script: str) -> Any:
        if not isinstance(script, str) or not script.strip():
            raise InvalidArguments("'script' must be a non-empty string")
        async with self._lock:
            await self._prepare(Method.EVALUATE.value)
            try:
                return await self._send(Method.EVALUATE, {"script": script})
            except ExtensionError as exc:
                raise EvaluationError(exc.message, details=exc.details) from exc

    async def interact(self, actions: Iterable[InteractionAction]) -> dict[str, Any]:
        """Run actions strictly in order. The first failure aborts the rest.

        Effects already applied to the page are not rolled back. The raised error
        carries `action_index` and `last_completed_index`.
        """
        steps = tuple(actions)
        if not steps:
            raise InvalidArguments("'actions' must be a non-empty list")

        async with self._lock:
            await self._prepare(Method.INTERACT.value)
            results: list[Any] = []
            for index, action in enumerate(steps):
                if isinstance(action, Wait):
                    await asyncio.sleep(action.timeout_ms / 1000.0)
                    results.append({"waitedMs": action.timeout_ms})
                    continue

                kind = action.to_wire()["type"]
                try:
                    result = await self._send(Method.INTERACT, {"actions": [action.to_wire()]})
                except ExtensionError as exc:
                    raise ActionError(
                        f"actions[{index}] ({kind}) failed: {exc.message}", index=index, action=kind, details=exc.details
                    ) from exc
                except BridgeError as exc:
                    exc.at_action(index)
                    raise

                failure = _action_failure(result)
                if failure is not None:
                    raise ActionError(f"actions[{index}] ({kind}) failed: {failure}", index=index, action=kind)
                results.append(result)

            logger.debug("interact completed %d action(s)", len(steps))
            return {"completed": len(steps), "results": results}

    async def execute(self, command: Command, *, raw_result: bool = False) -> Any:
        """Run a command. Raw mode returns the bare value and raises on failure;
        otherwise failures come back as an error ToolResult."""
        try:
            if isinstance(command, Evaluate):
                value = await self.evaluate(command.script)
            elif isinstance(command, Interact):
                value = await self.interact(command.actions)
            else:
                raise InvalidArguments(f"Unsupported command: {type(command).__name__}")
        except BridgeError as exc:
            if raw_result:
                raise
            return ToolResult.from_bridge_error(exc)
        if raw_result:
            return value
        return ToolResult.json(value)

    # Sync facades for the tool layer.

    def _run_sync(self, coro: Coroutine[Any, Any, Any]) -> Any:
        future = self.gateway.submit(coro)
        try:
            return future.result()
        except concurrent.futures.CancelledError as exc:
            raise ConnectionLost("Bridge shut down while the command was running") from exc

    def evaluate_sync(self, script: str) -> Any:
        return self._run_sync(self.evaluate(script))

    def interact_sync(self, actions: Iterable[InteractionAction]) -> dict[str, Any]:
        return self._run_sync(self.interact(tuple(actions)))

    def execute_sync(self, command: Command, *, raw_result: bool = False) -> Any:
        return self._run_sync(self.execute(command, raw_result=raw_result))


__all__ = ["CommandDispatcher"]
