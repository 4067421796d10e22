"""
Type definitions for MCP server responses and handlers.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..errors import BridgeError


@dataclass(slots=True)
class ToolContent:
    """Single content item in tool response."""

    type: str  # "text" or "image"
    text: str | None = None
    data: str | None = None  # base64 for images
    mime_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to MCP content format."""
        if self.type == "image":
            return {"type": "image", "data": self.data, "mimeType": self.mime_type}
        return {"type": "text", "text": self.text}


def _dumps(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, indent=2, default=str)


@dataclass(slots=True)
class ToolResult:
    """Result of a tool execution."""

    content: list[ToolContent] = field(default_factory=list)
    is_error: bool = False
    # Unwrapped value for in-process callers; never sent on the wire.
    data: Any | None = None

    @classmethod
    def text(cls, text: str) -> ToolResult:
        return cls(content=[ToolContent(type="text", text=text or "")], data=text)

    @classmethod
    def json(cls, data: Any) -> ToolResult:
        """Strings pass through as-is; everything else is rendered as indented JSON."""
        text = data if isinstance(data, str) else _dumps(data)
        return cls(content=[ToolContent(type="text", text=text)], data=data)

    @classmethod
    def error(
        cls,
        message: str,
        *,
        tool: str | None = None,
        suggestion: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> ToolResult:
        payload: dict[str, Any] = {"ok": False, "error": message}
        if tool:
            payload["tool"] = tool
        if suggestion:
            payload["suggestion"] = suggestion
        if details:
            payload["details"] = details
        return cls(content=[ToolContent(type="text", text=_dumps(payload))], is_error=True, data=payload)

    @classmethod
    def from_bridge_error(cls, exc: BridgeError, *, tool: str | None = None) -> ToolResult:
        return cls.error(exc.message, tool=tool, details=exc.to_payload())

    def to_content_list(self) -> list[dict[str, Any]]:
        """Convert to MCP content list format."""
        return [c.to_dict() for c in self.content]

    def to_wire(self) -> dict[str, Any]:
        return {"content": self.to_content_list(), "isError": self.is_error}


HandlerFunc = Callable[[dict[str, Any]], ToolResult]


