"""Typed interaction actions and commands.

Tool arguments arrive as loose JSON; `parse_actions` turns them into a closed set of
dataclasses so the dispatcher never handles untyped maps.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from .errors import InvalidArguments


@dataclass(frozen=True)
class Click:
    selector: str
    click_count: int = 1

    def to_wire(self) -> dict[str, Any]:
        return {"type": "click", "selector": self.selector, "clickCount": self.click_count}


@dataclass(frozen=True)
class TypeText:
    selector: str
    text: str

    def to_wire(self) -> dict[str, Any]:
        return {"type": "type", "selector": self.selector, "text": self.text}


@dataclass(frozen=True)
class PressKey:
    key: str

    def to_wire(self) -> dict[str, Any]:
        return {"type": "press_key", "key": self.key}


@dataclass(frozen=True)
class ScrollBy:
    dx: float = 0
    dy: float = 0

    def to_wire(self) -> dict[str, Any]:
        return {"type": "scroll_by", "x": self.dx, "y": self.dy}


@dataclass(frozen=True)
class Wait:
    """Local pause. Never sent to the extension."""

    timeout_ms: int

    def to_wire(self) -> dict[str, Any]:
        return {"type": "wait", "timeout": self.timeout_ms}


InteractionAction = Click | TypeText | PressKey | ScrollBy | Wait


@dataclass(frozen=True)
class Evaluate:
    script: str


@dataclass(frozen=True)
class Interact:
    actions: tuple[InteractionAction, ...]


Command = Evaluate | Interact

# Longest single pause accepted from a tool call (ten minutes).
MAX_WAIT_MS = 600_000


def _require_str(raw: dict[str, Any], key: str, index: int, *, allow_empty: bool = False) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or (not allow_empty and not value.strip()):
        raise InvalidArguments(f"actions[{index}]: '{key}' must be a non-empty string")
    return value


def _number(raw: dict[str, Any], keys: tuple[str, ...], index: int, default: float = 0) -> float:
    for key in keys:
        if key in raw and raw[key] is not None:
            value = raw[key]
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                raise InvalidArguments(f"actions[{index}]: '{key}' must be a finite number")
            return value
    return default


def parse_action(raw: Any, index: int = 0) -> InteractionAction:
    if not isinstance(raw, dict):
        raise InvalidArguments(f"actions[{index}] must be an object")
    kind = str(raw.get("type") or "").strip().lower()

    if kind == "click":
        count = _number(raw, ("clickCount", "click_count"), index, default=1)
        if count < 1 or int(count) != count:
            raise InvalidArguments(f"actions[{index}]: 'clickCount' must be a positive integer")
        return Click(selector=_require_str(raw, "selector", index), click_count=int(count))
    if kind == "type":
        return TypeText(selector=_require_str(raw, "selector", index), text=_require_str(raw, "text", index, allow_empty=True))
    if kind in {"press_key", "presskey", "key"}:
        return PressKey(key=_require_str(raw, "key", index))
    if kind in {"scroll_by", "scroll"}:
        return ScrollBy(dx=_number(raw, ("x", "dx"), index), dy=_number(raw, ("y", "dy"), index))
    if kind == "wait":
        ms = _number(raw, ("timeout", "timeoutMs", "timeout_ms"), index)
        if ms < 0 or ms > MAX_WAIT_MS:
            raise InvalidArguments(f"actions[{index}]: wait timeout must be within 0..{MAX_WAIT_MS} ms")
        return Wait(timeout_ms=int(ms))
    raise InvalidArguments(f"actions[{index}]: unknown action type {raw.get('type')!r}")


def parse_actions(raw: Any) -> tuple[InteractionAction, ...]:
    if not isinstance(raw, list) or not raw:
        raise InvalidArguments("'actions' must be a non-empty list")
    return tuple(parse_action(item, i) for i, item in enumerate(raw))


__all__ = [
    "Click",
    "Command",
    "Evaluate",
    "Interact",
    "InteractionAction",
    "PressKey",
    "ScrollBy",
    "TypeText",
    "Wait",
    "parse_action",
    "parse_actions",
]
