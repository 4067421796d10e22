"""Wire protocol between the bridge and the browser extension.

Frames are JSON text messages:

- request       {"id": 7, "method": "evaluate", "params": {...}}
- response      {"id": 7, "result": ...} or {"id": 7, "error": {"message": "..."}}
- notification  {"method": "statusChanged", "params": {...}}   (no id)

Everything is validated here so the rest of the bridge only ever sees typed frames.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import ProtocolError


class Method(str, Enum):
    """Requests the bridge sends to the extension."""

    GET_CONNECTION_STATUS = "getConnectionStatus"
    EVALUATE = "evaluate"
    INTERACT = "interact"


class NotificationKind(str, Enum):
    """Unsolicited frames the extension sends to the bridge."""

    HELLO = "hello"
    STATUS_CHANGED = "statusChanged"
    TAB_ATTACHED = "tabAttached"
    TAB_DETACHED = "tabDetached"


@dataclass(frozen=True)
class Request:
    id: int
    method: Method
    params: dict[str, Any] = field(default_factory=dict)

    def encode(self) -> str:
        return json.dumps({"id": self.id, "method": self.method.value, "params": self.params}, ensure_ascii=False)


@dataclass(frozen=True)
class Response:
    id: int
    result: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class Notification:
    kind: NotificationKind
    params: dict[str, Any] = field(default_factory=dict)


Frame = Response | Notification


def _error_message(raw: Any) -> str:
    if isinstance(raw, dict):
        msg = raw.get("message")
        if isinstance(msg, str) and msg:
            return msg
    if isinstance(raw, str) and raw:
        return raw
    return "Extension reported an error"


def parse_frame(raw: str | bytes) -> Frame:
    """Decode one inbound frame.

    Raises ProtocolError for anything that is not valid JSON, not an object,
    or not a recognized response/notification shape.
    """
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"Frame is not valid JSON: {exc}") from exc
    if not isinstance(msg, dict):
        raise ProtocolError("Frame must be a JSON object")

    if msg.get("id") is not None:
        raw_id = msg["id"]
        if isinstance(raw_id, bool) or not isinstance(raw_id, (int, str)):
            raise ProtocolError(f"Invalid response id: {raw_id!r}")
        try:
            req_id = int(raw_id)
        except ValueError as exc:
            raise ProtocolError(f"Invalid response id: {raw_id!r}") from exc
        if "error" in msg and msg["error"] is not None:
            return Response(id=req_id, error=_error_message(msg["error"]))
        if "result" not in msg:
            raise ProtocolError(f"Response {req_id} has neither result nor error")
        return Response(id=req_id, result=msg["result"])

    method = msg.get("method") or msg.get("type")
    if not isinstance(method, str) or not method:
        raise ProtocolError("Notification is missing a method")
    try:
        kind = NotificationKind(method)
    except ValueError as exc:
        raise ProtocolError(f"Unknown notification: {method}") from exc
    params = msg.get("params")
    return Notification(kind=kind, params=params if isinstance(params, dict) else {})


__all__ = [
    "Frame",
    "Method",
    "Notification",
    "NotificationKind",
    "Request",
    "Response",
    "parse_frame",
]
