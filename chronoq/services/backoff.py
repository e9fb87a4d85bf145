from __future__ import annotations

import asyncio
from typing import Optional


class InfraBackoff:
    """Exponential wait between retries of an infrastructure call (store/queue down)."""

    def __init__(self, initial: float = 1.0, maximum: float = 30.0) -> None:
        self.initial = initial
        self.maximum = maximum
        self._current = 0.0

    def next_delay(self) -> float:
        self._current = self.initial if self._current == 0 else min(self.maximum, self._current * 2)
        return self._current

    def reset(self) -> None:
        self._current = 0.0


async def sleep_or_stop(delay: float, stop_event: Optional[asyncio.Event]) -> bool:
    """Sleep up to `delay`; returns True if `stop_event` fired first."""
    if stop_event is None:
        await asyncio.sleep(delay)
        return False
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True
