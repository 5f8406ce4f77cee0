"""
NudgeCoach — Virtual Message Scheduler

Keeps the assistant proactive during silence. A background worker polls
at a fixed interval and injects a compact trigger token only when nobody
is speaking and every cooldown has elapsed:

  • user not speaking, AI not speaking
  • ≥ cooldown since the last virtual message
  • ≥ cooldown since the user's last utterance
  • ≥ cooldown since the AI's last organic turn (or no turn yet)

Tokens carry elapsed time and wall-clock time but no language — the
model phrases them in the user's language.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from ..core.clock import Clock, RealClock, format_hhmm
from ..core.config import SchedulerConfig, scheduler_cfg
from ..core.models import SchedulerCooldownState

logger = logging.getLogger("nudgecoach.scheduler")

# (upper bound in seconds, phase label)
_PHASES = (
    (30, "just_started"),
    (60, "30s"),
    (120, "1m"),
    (180, "2m"),
    (240, "3m"),
    (300, "4m"),
)


def phase_for(elapsed_seconds: float) -> str:
    for bound, label in _PHASES:
        if elapsed_seconds < bound:
            return label
    return "final"


def format_elapsed(elapsed_seconds: float) -> str:
    total = max(0, int(elapsed_seconds))
    minutes, seconds = divmod(total, 60)
    return f"{minutes}m{seconds}s" if minutes else f"{seconds}s"


def build_virtual_trigger(elapsed_seconds: float, wall: datetime, opening: bool = False) -> str:
    """Pure: same inputs, same token."""
    if opening:
        return f"[GREETING] elapsed={format_elapsed(elapsed_seconds)} current_time={format_hhmm(wall)}"
    return (
        f"[CHECK_IN] elapsed={format_elapsed(elapsed_seconds)} "
        f"phase={phase_for(elapsed_seconds)} current_time={format_hhmm(wall)}"
    )


class VirtualMessageScheduler:
    """
    Owns the SchedulerCooldownState of one session.

    ``send`` pushes a token through the controller's outbound channel;
    ``record`` stores it in history as a virtual message.
    """

    def __init__(
        self,
        send: Callable[[str], Awaitable[None]],
        record: Callable[[str], Any],
        session_id: str = "",
        config: SchedulerConfig = scheduler_cfg,
        clock: Optional[Clock] = None,
    ) -> None:
        self.session_id = session_id
        self._send = send
        self._record = record
        self._cfg = config
        self._clock = clock or RealClock()
        self._state = SchedulerCooldownState()
        self._session_start: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> SchedulerCooldownState:
        return self._state

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ── Lifecycle ────────────────────────────────────────────────────

    def start(self, session_start: Optional[float] = None) -> None:
        """Reset cooldowns and begin polling."""
        self._state = SchedulerCooldownState()
        self._session_start = session_start if session_start is not None else self._clock.now()
        if self.running:
            return
        self._task = asyncio.create_task(self._worker(), name=f"virtual-{self.session_id}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, Exception):
                pass

    # ── Live signals ─────────────────────────────────────────────────

    def set_user_speaking(self, speaking: bool) -> None:
        # Both edges count as an utterance; the cooldown runs from the last one
        if speaking or self._state.user_speaking:
            self.record_user_utterance()
        self._state.user_speaking = speaking

    def set_ai_speaking(self, speaking: bool) -> None:
        self._state.ai_speaking = speaking

    def record_user_utterance(self) -> None:
        self._state.last_user_utterance = self._clock.now()
        self._state.virtual_reply_pending = False

    def record_turn_complete(self, from_virtual: bool) -> None:
        """Only organic replies re-arm the turn-completion cooldown."""
        self._state.ai_speaking = False
        if not from_virtual:
            self._state.last_turn_complete = self._clock.now()
        self._state.virtual_reply_pending = False

    # ── Decision ─────────────────────────────────────────────────────

    def blocking_reason(self) -> Optional[str]:
        s = self._state
        now = self._clock.now()
        cooldown = self._cfg.cooldown

        if s.user_speaking:
            return "user_speaking"
        if s.ai_speaking:
            return "ai_speaking"
        if s.last_virtual_message is not None and now - s.last_virtual_message < cooldown:
            return "virtual_cooldown"
        if s.last_user_utterance is not None and now - s.last_user_utterance < cooldown:
            return "user_cooldown"
        if s.last_turn_complete is not None and now - s.last_turn_complete < cooldown:
            return "turn_cooldown"
        return None

    def should_fire(self) -> bool:
        return self.blocking_reason() is None

    async def check_and_fire(self) -> Optional[str]:
        reason = self.blocking_reason()
        if reason:
            logger.debug(f"[{self.session_id}] Virtual message held: {reason}")
            return None

        now = self._clock.now()
        start = self._session_start if self._session_start is not None else now
        token = build_virtual_trigger(
            now - start,
            self._clock.wall(),
            opening=self._state.virtual_count == 0,
        )

        # Claim the slot before awaiting so an overlapping check cannot double-fire
        self._state.last_virtual_message = now
        self._state.virtual_reply_pending = True
        self._state.virtual_count += 1
        self._record(token)

        logger.info(f"[{self.session_id}] Virtual message: {token}")
        await self._send(token)
        return token

    # ── Worker ───────────────────────────────────────────────────────

    async def _worker(self) -> None:
        try:
            if self._cfg.initial_delay > 0:
                await asyncio.sleep(self._cfg.initial_delay)
            while True:
                try:
                    await self.check_and_fire()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning(f"[{self.session_id}] Virtual message failed: {e}")
                await asyncio.sleep(self._cfg.poll_interval)
        except asyncio.CancelledError:
            pass
