"""
NudgeCoach — Clock

Monotonic time for cooldown arithmetic plus wall-clock time for the
``current_time=HH:MM`` fields embedded in trigger strings.
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta
from typing import Optional, Protocol


class Clock(Protocol):
    def now(self) -> float: ...

    def wall(self) -> datetime: ...


class RealClock:
    def now(self) -> float:
        return time.monotonic()

    def wall(self) -> datetime:
        return datetime.now()


class ManualClock:
    """
    Deterministic clock for tests.

    now() only moves when advance() is called; wall() moves with it.
    """

    def __init__(self, start: float = 1000.0, wall_start: Optional[datetime] = None) -> None:
        self._now = start
        self._start = start
        self._wall_start = wall_start or datetime(2024, 5, 6, 14, 5, 0)

    def now(self) -> float:
        return self._now

    def wall(self) -> datetime:
        return self._wall_start + timedelta(seconds=self._now - self._start)

    def advance(self, seconds: float) -> None:
        self._now += seconds


def format_hhmm(moment: datetime) -> str:
    return moment.strftime("%H:%M")
