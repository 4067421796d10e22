"""
Tool registry with dispatch table for MCP server.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..errors import NoConnection
from .types import HandlerFunc, ToolResult

if TYPE_CHECKING:
    from ..backend import CommandDispatcher
    from ..config import BridgeConfig
    from ..extension_gateway import ExtensionGateway
    from .handlers.ozon import OzonHandler

logger = logging.getLogger("mcp.ozon.registry")


class ToolRegistry:
    """Registry for tool handlers; gates tab-bound tools on extension readiness."""

    def __init__(self, gateway: ExtensionGateway | None = None, *, connect_timeout: float = 2.0) -> None:
        # name -> (handler, requires_tab)
        self._handlers: dict[str, tuple[HandlerFunc, bool]] = {}
        self.gateway = gateway
        self.connect_timeout = connect_timeout

    def register(self, name: str, handler: HandlerFunc, requires_tab: bool = True) -> None:
        """Register a tool handler."""
        self._handlers[name] = (handler, requires_tab)

    def register_many(self, handlers: dict[str, tuple[HandlerFunc, bool]]) -> None:
        """Register multiple handlers at once."""
        self._handlers.update(handlers)

    def get(self, name: str) -> tuple[HandlerFunc, bool] | None:
        return self._handlers.get(name)

    def has(self, name: str) -> bool:
        return name in self._handlers

    def dispatch(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Dispatch tool call to appropriate handler.

        Tab-bound tools wait briefly for the extension to bind a tab, which avoids
        "first call fails" races right after startup, then fail with no_connection.
        """
        handler_info = self._handlers.get(name)
        if handler_info is None:
            raise KeyError(f"Unknown tool: {name}")

        handler, requires_tab = handler_info

        gw = self.gateway
        if requires_tab and gw is not None and not gw.is_bound():
            if self.connect_timeout > 0:
                gw.wait_for_binding(timeout=self.connect_timeout)
            if not gw.is_bound():
                status = gw.diagnostics()
                reason = (
                    "Extension is connected but no tab is bound"
                    if status.get("connected")
                    else "Extension is not connected"
                )
                err = NoConnection(reason, details={"gateway": status})
                return ToolResult.error(
                    reason,
                    tool=name,
                    suggestion="Open the Ozon tab, enable the extension and connect the tab from its popup, then retry",
                    details=err.to_payload(),
                )

        return handler(arguments)

    @property
    def tool_names(self) -> list[str]:
        return list(self._handlers.keys())

    def __len__(self) -> int:
        return len(self._handlers)


def create_default_registry(
    config: BridgeConfig,
    gateway: ExtensionGateway,
    dispatcher: CommandDispatcher,
    ozon: OzonHandler | None = None,
) -> ToolRegistry:
    from .handlers import core_handlers, ozon_handlers

    registry = ToolRegistry(gateway, connect_timeout=config.connect_timeout)
    registry.register_many(core_handlers(gateway, dispatcher))
    if ozon is not None:
        registry.register_many(ozon_handlers(ozon))
    return registry


__all__ = ["HandlerFunc", "ToolRegistry", "create_default_registry"]
