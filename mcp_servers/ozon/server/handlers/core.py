"""Handlers for the evaluate/interact primitives and the status probe."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from ...actions import Evaluate, Interact, parse_actions
from ...errors import InvalidArguments
from ..types import HandlerFunc, ToolContent, ToolResult

if TYPE_CHECKING:
    from ...backend import CommandDispatcher
    from ...extension_gateway import ExtensionGateway


def _raw(value: Any) -> ToolResult:
    text = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)
    return ToolResult(content=[ToolContent(type="text", text=text)], data=value)


def _script_arg(args: dict[str, Any]) -> str:
    # "function"/"expression" are accepted as aliases for older clients.
    for key in ("script", "function", "expression"):
        value = args.get(key)
        if isinstance(value, str) and value.strip():
            return value
    raise InvalidArguments("'script' must be a non-empty string")


def core_handlers(gateway: ExtensionGateway, dispatcher: CommandDispatcher) -> dict[str, tuple[HandlerFunc, bool]]:
    def handle_evaluate(args: dict[str, Any]) -> ToolResult:
        command = Evaluate(_script_arg(args))
        if args.get("rawResult"):
            return _raw(dispatcher.execute_sync(command, raw_result=True))
        return dispatcher.execute_sync(command)

    def handle_interact(args: dict[str, Any]) -> ToolResult:
        command = Interact(parse_actions(args.get("actions")))
        if args.get("rawResult"):
            return _raw(dispatcher.execute_sync(command, raw_result=True))
        return dispatcher.execute_sync(command)

    def handle_status(args: dict[str, Any]) -> ToolResult:
        return ToolResult.json(gateway.diagnostics())

    return {
        "browser_evaluate": (handle_evaluate, True),
        "browser_interact": (handle_interact, True),
        "browser_status": (handle_status, False),
    }
