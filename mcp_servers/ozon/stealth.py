"""Arm-before-act sequencing for the extension's anti-detection script.

The patches themselves live in the extension (stealth-inject.js), which injects them
into every new document of the connected tab. Before the first command on a newly
bound tab the bridge asks for `getConnectionStatus`, confirms the extension still has
that tab connected, and records the stealth flag it reports.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .errors import NoConnection
from .protocol import Method

logger = logging.getLogger("mcp.ozon.stealth")

SendCommand = Callable[..., Awaitable[Any]]


def _reported_tab(status: dict[str, Any]) -> tuple[bool, Any]:
    for key in ("tabId", "connectedTabId"):
        if key in status:
            return True, status[key]
    return False, None


class StealthCoordinator:
    def __init__(self, *, enabled: bool = True, timeout: float = 10.0) -> None:
        self.enabled = enabled
        self.timeout = timeout
        self._armed_tab: Any | None = None

    @property
    def armed_tab(self) -> Any | None:
        return self._armed_tab

    def is_armed(self, tab_id: Any) -> bool:
        return tab_id is not None and self._armed_tab == tab_id

    def reset(self) -> None:
        if self._armed_tab is not None:
            logger.debug("stealth disarmed for tab %s", self._armed_tab)
        self._armed_tab = None

    async def ensure_armed(self, tab_id: Any, send: SendCommand) -> bool | None:
        """Confirm `tab_id` is the extension's connected tab unless already confirmed.

        Returns the stealth flag the extension reported, or None when nothing was sent
        or no flag came back. Raises NoConnection when the extension reports a
        different tab (or none); transport errors propagate and the next command retries.
        """
        if not self.enabled or tab_id is None or self.is_armed(tab_id):
            return None
        status = await send(Method.GET_CONNECTION_STATUS, {}, timeout=self.timeout)
        status = status if isinstance(status, dict) else {}

        known, reported_tab = _reported_tab(status)
        if known and str(reported_tab) != str(tab_id):
            raise NoConnection(
                f"Extension reports tab {reported_tab} connected, expected tab {tab_id}",
                details={"boundTabId": tab_id, "reportedTabId": reported_tab},
            )

        flag = status.get("stealthMode")
        self._armed_tab = tab_id
        logger.info("stealth confirmed tab=%s reported=%s", tab_id, flag)
        return flag if isinstance(flag, bool) else None


__all__ = ["StealthCoordinator"]
