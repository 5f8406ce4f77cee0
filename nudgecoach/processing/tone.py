"""
NudgeCoach — Tone State Machine

================================================================================
RESISTANCE-DRIVEN PERSONA SELECTION
================================================================================

Every time the user pushes back, the assistant escalates its speaking style:

  1st rejection  → acknowledge_tiny   ("I get it" + one tiny step)
  2nd rejection  → curious_memory     (ask about a past success)
  3rd rejection  → tough_love         (gentle if the user is in a low mood)
  4th rejection  → absurd_humor
  5th+           → alternate tough_love / absurd_humor (gentle on low mood)

A committed tone holds for at least ``min_tone_change_interval``; signals
arriving inside that window are dropped, not queued. Identical signals
closer than ``debounce_window`` are duplicate dispatch and ignored.

All mutation goes through one synchronous method, so two resistance
events on the event loop can never interleave their commits.
================================================================================
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from ..core.clock import Clock, RealClock, format_hhmm
from ..core.config import ToneConfig, tone_cfg
from ..core.models import EmotionalState, ResistanceSignal, Tone, ToneState

logger = logging.getLogger("nudgecoach.tone")

CYCLE_TONES: Tuple[Tone, Tone] = (Tone.TOUGH_LOVE, Tone.ABSURD_HUMOR)

TONE_DESCRIPTIONS: Dict[Tone, str] = {
    Tone.FRIENDLY: "Warm and encouraging",
    Tone.ACKNOWLEDGE_TINY: "Acknowledging, offering one tiny step",
    Tone.CURIOUS_MEMORY: "Curious, recalling past wins",
    Tone.GENTLE: "Soft and supportive",
    Tone.TOUGH_LOVE: "Direct and firm",
    Tone.ABSURD_HUMOR: "Playful and absurd",
}

TONE_INSTRUCTIONS: Dict[Tone, str] = {
    Tone.FRIENDLY: "Return to your normal warm, encouraging style.",
    Tone.ACKNOWLEDGE_TINY: 'Say "I get it" then offer ONE tiny step. NO jokes, NO questions.',
    Tone.CURIOUS_MEMORY: "Ask ONE curious question about a time they pushed through before. Keep it short.",
    Tone.GENTLE: "Be soft. Validate the feeling first, then suggest the smallest possible step.",
    Tone.TOUGH_LOVE: "Be direct. Name the avoidance kindly but firmly, then give ONE concrete action.",
    Tone.ABSURD_HUMOR: "Use one absurd, playful image to break the tension, then nudge toward ONE step.",
}


def determine_next_tone(
    rejection_count: int,
    emotional_state: EmotionalState,
    cycle_index: int,
) -> Tuple[Tone, int]:
    """Pure escalation table. Returns ``(tone, new_cycle_index)``."""
    low_mood = emotional_state == EmotionalState.LOW_MOOD

    if rejection_count <= 1:
        return Tone.ACKNOWLEDGE_TINY, 0
    if rejection_count == 2:
        return Tone.CURIOUS_MEMORY, 0
    if rejection_count == 3:
        return (Tone.GENTLE if low_mood else Tone.TOUGH_LOVE), 0
    if rejection_count == 4:
        return Tone.ABSURD_HUMOR, 1

    # Past four the index keeps flipping even while gentle overrides it
    new_index = (cycle_index + 1) % len(CYCLE_TONES)
    if low_mood:
        return Tone.GENTLE, new_index
    return CYCLE_TONES[new_index], new_index


class ToneStateMachine:
    """
    Owns the ToneState for one session.

    Every public ``record_*`` call returns an instruction string for the
    model, or None when nothing should be sent.
    """

    def __init__(
        self,
        session_id: str = "",
        config: ToneConfig = tone_cfg,
        clock: Optional[Clock] = None,
    ) -> None:
        self.session_id = session_id
        self._cfg = config
        self._clock = clock or RealClock()
        self._state = ToneState()
        self._last_signal: Optional[str] = None
        self._last_signal_at: Optional[float] = None
        # Monotonic timestamps of committed transitions
        self._transitions: List[float] = []

    # ── Read side ────────────────────────────────────────────────────

    @property
    def state(self) -> ToneState:
        return self._state

    @property
    def current_tone(self) -> Tone:
        return self._state.current_tone

    @property
    def description(self) -> str:
        return TONE_DESCRIPTIONS[self._state.current_tone]

    @property
    def transition_times(self) -> List[float]:
        return list(self._transitions)

    @property
    def is_in_cooldown(self) -> bool:
        last = self._state.last_tone_change
        return last is not None and (self._clock.now() - last) < self._cfg.min_tone_change_interval

    @property
    def is_in_cycle_mode(self) -> bool:
        return self._state.consecutive_rejections > 4

    # ── Write side ───────────────────────────────────────────────────

    def record_resistance(self, signal: ResistanceSignal) -> Optional[str]:
        if self._is_duplicate(signal.value):
            logger.debug(f"[{self.session_id}] Duplicate resistance {signal.value} ignored")
            return None

        s = self._state
        if s.has_started_action:
            logger.debug(f"[{self.session_id}] Resistance after action start ignored")
            return None

        # The first rejection of a run is never held back by the cooldown
        if s.consecutive_rejections >= 1 and self.is_in_cooldown:
            logger.info(
                f"[{self.session_id}] Resistance {signal.value} dropped "
                f"(tone {s.current_tone.value} in cooldown)"
            )
            return None

        count = s.consecutive_rejections + 1
        emotional = EmotionalState.LOW_MOOD if signal.is_emotional else EmotionalState.PROCRASTINATING
        tone, cycle_index = determine_next_tone(count, emotional, s.cycle_index)

        s.consecutive_rejections = count
        s.total_rejections += 1
        s.emotional_state = emotional
        s.cycle_index = cycle_index

        if tone == s.current_tone and count <= 4:
            logger.info(f"[{self.session_id}] Rejection #{count} keeps tone {tone.value}")
            return None

        self._commit(tone, reason=f"{signal.value} #{count}")
        return (
            f"[TONE_SHIFT] style={tone.value} rejection_count={count} "
            f"current_time={self._hhmm()}. {TONE_INSTRUCTIONS[tone]}"
        )

    def record_acceptance(self) -> None:
        s = self._state
        if s.consecutive_rejections == 0:
            return
        logger.info(f"[{self.session_id}] Acceptance after {s.consecutive_rejections} rejection(s)")
        s.consecutive_rejections = 0
        s.current_tone = Tone.FRIENDLY
        s.emotional_state = EmotionalState.UNKNOWN
        s.cycle_index = 0

    def record_action_started(self) -> Optional[str]:
        if self._is_duplicate("action_started"):
            return None

        s = self._state
        if s.has_started_action or s.consecutive_rejections == 0:
            return None

        before = s.consecutive_rejections
        s.has_started_action = True
        s.consecutive_rejections = 0
        s.current_tone = Tone.FRIENDLY
        s.cycle_index = 0
        logger.info(f"[{self.session_id}] Action started after {before} rejection(s)")
        return (
            f"[ACTION_STARTED] rejection_count_before_action={before} "
            f"current_time={self._hhmm()}. User finally started! "
            f"Give IMMEDIATE enthusiastic positive feedback!"
        )

    def generate_completion_celebration(self) -> str:
        return (
            f"[TASK_COMPLETED] total_rejections_overcome={self._state.total_rejections} "
            f"current_time={self._hhmm()}. User completed the task! Give BIG celebration!"
        )

    def force_tone_change(self, tone: Tone) -> str:
        """Manual override; bypasses debounce and cooldown."""
        self._commit(tone, reason="manual")
        return (
            f"[TONE_SHIFT] style={tone.value} manual=true "
            f"current_time={self._hhmm()}. {TONE_INSTRUCTIONS[tone]}"
        )

    def reset(self) -> None:
        self._state = ToneState()
        self._last_signal = None
        self._last_signal_at = None
        self._transitions.clear()

    # ── Internals ────────────────────────────────────────────────────

    def _is_duplicate(self, key: str) -> bool:
        now = self._clock.now()
        if (
            self._last_signal == key
            and self._last_signal_at is not None
            and now - self._last_signal_at < self._cfg.debounce_window
        ):
            return True
        self._last_signal = key
        self._last_signal_at = now
        return False

    def _commit(self, tone: Tone, reason: str) -> None:
        """Single mutation point for tone transitions."""
        prev = self._state.current_tone
        now = self._clock.now()
        self._state.current_tone = tone
        self._state.last_tone_change = now
        self._transitions.append(now)
        logger.info(f"[{self.session_id}] TONE: {prev.value} → {tone.value} ({reason})")

    def _hhmm(self) -> str:
        return format_hhmm(self._clock.wall())
