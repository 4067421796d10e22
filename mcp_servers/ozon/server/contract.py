"""Protocol and tool contract definitions.

This is the single source of truth for:
- supported MCP protocol versions
- server identity
- capabilities advertised by initialize
- tool list
"""

from __future__ import annotations

import os
from typing import Any

from .definitions import CORE_TOOL_DEFINITIONS, TOOL_DEFINITIONS

SERVER_INFO: dict[str, str] = {"name": "ozon-mcp", "version": "0.1.0"}

SUPPORTED_PROTOCOL_VERSIONS = ["2025-06-18", "2025-03-26", "2024-11-05"]
LATEST_PROTOCOL_VERSION = SUPPORTED_PROTOCOL_VERSIONS[0]
DEFAULT_PROTOCOL_VERSION = LATEST_PROTOCOL_VERSION

CAPABILITIES: dict[str, Any] = {
    "tools": {"listChanged": False},
}


def select_protocol(requested: Any) -> str:
    if isinstance(requested, str) and requested in SUPPORTED_PROTOCOL_VERSIONS:
        return requested
    return DEFAULT_PROTOCOL_VERSION


def initialize_result(protocol: str) -> dict[str, Any]:
    return {
        "protocolVersion": protocol,
        "serverInfo": SERVER_INFO,
        "capabilities": CAPABILITIES,
        "instructions": "Drive the user's Ozon tab through the browser extension. Check browser_status first.",
    }


def tools_list() -> list[dict[str, Any]]:
    toolset = (os.environ.get("MCP_TOOLSET") or "").strip().lower()
    if toolset in {"core", "primitives"}:
        return list(CORE_TOOL_DEFINITIONS)
    return list(TOOL_DEFINITIONS)
