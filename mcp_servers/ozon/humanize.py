"""Human-like pacing for site tools.

Every pause is issued as a `wait` action through the dispatcher, so delays queue up
behind (and in front of) real actions exactly like input does.
"""

from __future__ import annotations

import logging
import math
import random
from typing import TYPE_CHECKING

from .actions import Click, ScrollBy, TypeText, Wait

if TYPE_CHECKING:
    from .backend import CommandDispatcher

log = logging.getLogger("mcp.ozon.humanize")


def human_delay_ms(low: int, high: int, *, rng: random.Random | None = None, sigma: float = 0.3) -> int:
    """Log-normal delay centred between low and high, clamped to [low, high].

    Log-normal matches human reaction times: mostly quick responses with an
    occasional longer pause.
    """
    r = rng or random
    if high < low:
        low, high = high, low
    low = max(0, int(low))
    high = max(low, int(high))
    if high == low:
        return low
    mid = max((low + high) / 2, 1.0)
    delay = r.lognormvariate(math.log(mid), max(0.01, sigma))
    return int(min(max(delay, low), high))


class Humanizer:
    def __init__(self, dispatcher: CommandDispatcher, *, rng: random.Random | None = None, scale: float = 1.0) -> None:
        self.dispatcher = dispatcher
        self.rng = rng or random.Random()
        self.scale = max(0.0, scale)

    def pause(self, low_ms: int, high_ms: int) -> int:
        ms = int(human_delay_ms(low_ms, high_ms, rng=self.rng) * self.scale)
        if ms > 0:
            self.dispatcher.interact_sync([Wait(ms)])
        log.debug("pause %dms", ms)
        return ms

    def type_text(self, selector: str, text: str) -> None:
        """Focus the field, then type one character at a time with 50-150ms gaps."""
        self.dispatcher.interact_sync([Click(selector)])
        self.pause(100, 300)
        for i, ch in enumerate(text):
            self.dispatcher.interact_sync([TypeText(selector, ch)])
            if i < len(text) - 1:
                self.pause(50, 150)

    def scroll(self) -> None:
        """Scroll down a random amount, sometimes drifting back up a little."""
        self.dispatcher.interact_sync([ScrollBy(0, self.rng.randint(300, 800))])
        self.pause(500, 1000)
        if self.rng.random() > 0.5:
            self.dispatcher.interact_sync([ScrollBy(0, -self.rng.randint(100, 300))])
            self.pause(300, 700)


__all__ = ["Humanizer", "human_delay_ms"]
