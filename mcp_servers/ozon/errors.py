"""Error taxonomy for the extension bridge.

Every failure that can cross the tool boundary is a `BridgeError`. Tool handlers
never let these escape as exceptions: the server turns them into error results
carrying `to_payload()` as details.
"""

from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """Base class for bridge failures."""

    code = "bridge_error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})
        # Set by the dispatcher when the failure happened inside an interact sequence.
        self.action_index: int | None = None
        self.last_completed_index: int | None = None

    def at_action(self, index: int) -> BridgeError:
        """Tag the error with the index of the failing interact action."""
        self.action_index = index
        self.last_completed_index = index - 1 if index > 0 else None
        return self

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.action_index is not None:
            payload["actionIndex"] = self.action_index
            payload["lastCompletedIndex"] = self.last_completed_index
        if self.details:
            payload["details"] = self.details
        return payload


class BindError(BridgeError):
    """The listening socket could not be opened. Fatal at startup."""

    code = "bind_error"


class NoConnection(BridgeError):
    code = "no_connection"


class ConnectionLost(BridgeError):
    code = "connection_lost"


class CommandTimeout(BridgeError):
    code = "timeout"


class ProtocolError(BridgeError):
    """Malformed or uncorrelated wire frame."""

    code = "protocol_error"


class InvalidArguments(BridgeError):
    code = "invalid_arguments"


class ExtensionError(BridgeError):
    """Application-level failure reported by the extension or the page."""

    code = "extension_error"


class EvaluationError(ExtensionError):
    code = "evaluation_error"


class ActionError(ExtensionError):
    code = "action_error"

    def __init__(self, message: str, *, index: int, action: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details=details)
        self.action = action
        self.at_action(index)

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["action"] = self.action
        return payload


__all__ = [
    "ActionError",
    "BindError",
    "BridgeError",
    "CommandTimeout",
    "ConnectionLost",
    "EvaluationError",
    "ExtensionError",
    "InvalidArguments",
    "NoConnection",
    "ProtocolError",
]
