"""
MCP server for Ozon automation through the browser extension bridge.

This module provides the main entry point and protocol handling.
Tool dispatch is handled via registry pattern in server/registry.py.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import sys
import threading
from typing import Any

from .backend import CommandDispatcher
from .config import BridgeConfig
from .errors import BindError, BridgeError
from .extension_gateway import ExtensionGateway
from .humanize import Humanizer
from .server.contract import (
    DEFAULT_PROTOCOL_VERSION,
    LATEST_PROTOCOL_VERSION,
    SUPPORTED_PROTOCOL_VERSIONS,
    initialize_result,
    select_protocol,
    tools_list,
)
from .server.handlers.ozon import OzonHandler
from .server.registry import create_default_registry
from .server.types import ToolResult
from .site_selectors import load_selectors
from .stealth import StealthCoordinator

logger = logging.getLogger("mcp.ozon")

__all__ = [
    "SUPPORTED_PROTOCOL_VERSIONS",
    "LATEST_PROTOCOL_VERSION",
    "DEFAULT_PROTOCOL_VERSION",
    "McpServer",
    "configure_logging",
    "main",
]

_LOG_ARG_LIMIT = 200
_write_lock = threading.Lock()


def configure_logging(config: BridgeConfig) -> None:
    """Log to stderr (stdout carries the protocol); optionally mirror to a file."""
    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )
    if config.log_file:
        if log_dir := os.path.dirname(config.log_file):
            os.makedirs(log_dir, exist_ok=True)
        handler = logging.FileHandler(config.log_file, encoding="utf-8")
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        logging.getLogger("mcp.ozon").addHandler(handler)
    # websockets logs every handshake at INFO.
    logging.getLogger("websockets").setLevel(logging.DEBUG if config.debug else logging.WARNING)


def _write_message(payload: dict[str, Any]) -> None:
    """Write JSON-RPC message to stdout."""
    line = (json.dumps(payload, ensure_ascii=False) + "\n").encode()
    with _write_lock:
        sys.stdout.buffer.write(line)
        sys.stdout.buffer.flush()


def _read_message() -> dict[str, Any] | None:
    """Read JSON-RPC message from stdin. Returns None on EOF."""
    while True:
        line = sys.stdin.buffer.readline()
        if not line:
            return None
        line = line.strip()
        if not line:
            continue
        try:
            msg = json.loads(line.decode())
        except ValueError as exc:
            logger.warning("dropping malformed stdin frame: %s", exc)
            _write_message({"jsonrpc": "2.0", "id": None, "error": {"code": -32700, "message": "Parse error"}})
            continue
        if isinstance(msg, dict):
            return msg
        logger.warning("dropping non-object stdin frame")


def _safe_args(arguments: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in arguments.items():
        if isinstance(value, str) and len(value) > _LOG_ARG_LIMIT:
            out[key] = value[:_LOG_ARG_LIMIT] + f"...(+{len(value) - _LOG_ARG_LIMIT})"
        elif isinstance(value, list):
            out[key] = f"[{len(value)} items]"
        else:
            out[key] = value
    return out


class McpServer:
    """MCP Server with registry-based tool dispatch."""

    def __init__(self, config: BridgeConfig | None = None) -> None:
        self.config = config or BridgeConfig.from_env()
        self.stealth = StealthCoordinator(enabled=self.config.stealth_mode)
        self.gateway = ExtensionGateway(
            host=self.config.host,
            port=self.config.port,
            stealth=self.stealth,
            command_timeout=self.config.command_timeout,
        )
        self.dispatcher = CommandDispatcher(self.gateway, command_timeout=self.config.command_timeout)
        self.ozon = OzonHandler(
            self.dispatcher,
            load_selectors(self.config.selectors_path),
            Humanizer(self.dispatcher, scale=self.config.humanize_scale),
        )
        self.registry = create_default_registry(self.config, self.gateway, self.dispatcher, self.ozon)
        self._closed = threading.Event()

    def start(self) -> None:
        """Bind the extension gateway. Raises BindError."""
        self.gateway.start()

    def shutdown(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        logger.info("shutting down")
        self.gateway.stop()

    def handle_initialize(self, request_id: Any, params: dict[str, Any] | None = None) -> None:
        requested = (params or {}).get("protocolVersion") if isinstance(params, dict) else None
        _write_message({"jsonrpc": "2.0", "id": request_id, "result": initialize_result(select_protocol(requested))})

    def handle_list_tools(self, request_id: Any) -> None:
        _write_message({"jsonrpc": "2.0", "id": request_id, "result": {"tools": tools_list()}})

    def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        logger.info("tool=%s args=%s", name, _safe_args(arguments))
        try:
            if not name:
                return ToolResult.error("Missing tool name")
            if not self.registry.has(name):
                return ToolResult.error(f"Unknown tool: {name}", tool=name)
            return self.registry.dispatch(name, arguments)
        except BridgeError as e:
            logger.info("tool_error tool=%s code=%s reason=%s", name, e.code, e.message)
            return ToolResult.from_bridge_error(e, tool=name)
        except Exception as exc:
            logger.exception("tool_call_failed")
            return ToolResult.error(str(exc), tool=name)

    def handle_call_tool(self, request_id: Any, name: str, arguments: dict[str, Any]) -> None:
        result = self.call_tool(name, arguments if isinstance(arguments, dict) else {})
        _write_message({"jsonrpc": "2.0", "id": request_id, "result": result.to_wire()})

    def dispatch(self, message: dict[str, Any]) -> None:
        """Dispatch incoming JSON-RPC message to appropriate handler."""
        if not message:
            return

        method = message.get("method")
        request_id = message.get("id")
        params = message.get("params") or {}

        if method == "initialize":
            self.handle_initialize(request_id, params)
        elif isinstance(method, str) and method.startswith("notifications/"):
            return
        elif method == "tools/list":
            self.handle_list_tools(request_id)
        elif method == "tools/call":
            name = params.get("name")
            arguments = params.get("arguments") or {}
            self.handle_call_tool(request_id, name or "", arguments)
        elif method == "ping":
            _write_message({"jsonrpc": "2.0", "id": request_id, "result": {}})
        elif request_id is not None:
            _write_message(
                {
                    "jsonrpc": "2.0",
                    "id": request_id,
                    "error": {"code": -32601, "message": f"Method {method} not found"},
                }
            )


def main() -> None:
    """Main entry point for MCP server."""
    config = BridgeConfig.from_env()
    configure_logging(config)
    server = McpServer(config)
    try:
        server.start()
    except BindError as exc:
        logger.error("fatal: %s", exc.message)
        sys.exit(1)
    logger.info("ozon-mcp ready; waiting for the extension on %s:%s", config.host, server.gateway.port)

    def _on_signal(signum: int, _frame: Any) -> None:
        logger.info("received signal %s", signum)
        server.shutdown()
        sys.exit(0)

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    try:
        while True:
            message = _read_message()
            if message is None:
                break
            server.dispatch(message)
    finally:
        server.shutdown()


if __name__ == "__main__":
    main()
