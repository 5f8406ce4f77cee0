"""
NudgeCoach — Countdown Timer

Decrements once per ``tick_interval``; the zero callback fires exactly
once per start, whether zero is reached by the worker or by ``tick()``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger("nudgecoach.countdown")


class CountdownTimer:

    def __init__(
        self,
        on_zero: Callable[[], Any],
        session_id: str = "",
        tick_interval: float = 1.0,
        on_tick: Optional[Callable[[int], None]] = None,
    ) -> None:
        self.session_id = session_id
        self._on_zero = on_zero
        self._on_tick = on_tick
        self._interval = tick_interval
        self._remaining = 0
        self._fired = False
        self._task: Optional[asyncio.Task] = None

    @property
    def remaining(self) -> int:
        return self._remaining

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, seconds: int) -> None:
        self.cancel()
        self._remaining = max(0, int(seconds))
        self._fired = False
        self._task = asyncio.create_task(self._worker(), name=f"countdown-{self.session_id}")
        logger.info(f"[{self.session_id}] Countdown started: {self._remaining}s")

    def cancel(self) -> None:
        task, self._task = self._task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def reset(self, seconds: int = 0) -> None:
        self.cancel()
        self._remaining = max(0, int(seconds))
        self._fired = False

    def tick(self) -> None:
        if self._fired:
            return
        if self._remaining > 0:
            self._remaining -= 1
            if self._on_tick:
                self._on_tick(self._remaining)
        if self._remaining == 0:
            self._fired = True
            logger.info(f"[{self.session_id}] Countdown reached zero")
            self._on_zero()

    async def _worker(self) -> None:
        try:
            while not self._fired:
                await asyncio.sleep(self._interval)
                self.tick()
        except asyncio.CancelledError:
            pass
