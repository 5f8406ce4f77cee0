"""
NudgeCoach — Session State Machine

  IDLE → CONNECTING → ACTIVE → FINALIZING → ENDED
                 ╰──────────┴────────┴──────→ ENDED   (failure / early end)
  ENDED → CONNECTING (restart) | IDLE (reset)

The controller moves through this table only; an unlisted move is a bug
and raises instead of silently producing an impossible session.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional

logger = logging.getLogger("nudgecoach.state")


class SessionState(str, Enum):
    IDLE = "idle"                # Nothing started yet
    CONNECTING = "connecting"    # Media, config, credential, connection in flight
    ACTIVE = "active"            # Connected; countdown running
    FINALIZING = "finalizing"    # Completion sequence running
    ENDED = "ended"              # Everything released


class SessionMode(str, Enum):
    """Which capabilities the live session actually has."""
    MULTIMODAL = "multimodal"    # Camera + microphone
    AUDIO_ONLY = "audio_only"    # Camera denied or unavailable
    UNAVAILABLE = "unavailable"  # Nothing live


_ALLOWED: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.IDLE:       frozenset({SessionState.CONNECTING, SessionState.ENDED}),
    SessionState.CONNECTING: frozenset({SessionState.ACTIVE, SessionState.ENDED}),
    SessionState.ACTIVE:     frozenset({SessionState.FINALIZING, SessionState.ENDED}),
    SessionState.FINALIZING: frozenset({SessionState.ENDED}),
    SessionState.ENDED:      frozenset({SessionState.CONNECTING, SessionState.IDLE}),
}

TransitionListener = Callable[[SessionState, SessionState, str], None]


@dataclass(frozen=True)
class Transition:
    source: SessionState
    target: SessionState
    reason: str
    at: float
    dwell_ms: float

    def to_dict(self) -> Dict[str, object]:
        return {
            "from": self.source.value,
            "to": self.target.value,
            "reason": self.reason,
            "timestamp": self.at,
            "duration_in_prev_ms": self.dwell_ms,
        }


class SessionStateMachine:

    def __init__(self, session_id: str = "", on_transition: Optional[TransitionListener] = None) -> None:
        self._session_id = session_id
        self._on_transition = on_transition
        self._state = SessionState.IDLE
        self._mode = SessionMode.UNAVAILABLE
        self._since = time.time()
        self._log: List[Transition] = []

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def mode(self) -> SessionMode:
        return self._mode

    @property
    def history(self) -> List[Dict[str, object]]:
        return [t.to_dict() for t in self._log]

    def can_transition(self, target: SessionState) -> bool:
        return target == self._state or target in _ALLOWED[self._state]

    def transition(self, target: SessionState, reason: str = "") -> None:
        """Move to ``target``; staying put is a no-op, an unlisted move raises ValueError."""
        if target == self._state:
            return
        if target not in _ALLOWED[self._state]:
            raise ValueError(
                f"[{self._session_id}] cannot go {self._state.value} → {target.value}"
                + (f" ({reason})" if reason else "")
            )

        now = time.time()
        step = Transition(self._state, target, reason, now, round((now - self._since) * 1000, 1))
        self._log.append(step)
        self._state = target
        self._since = now
        logger.info(
            f"[{self._session_id}] STATE: {step.source.value} → {target.value}"
            + (f" ({reason})" if reason else "")
        )

        if self._on_transition is not None:
            try:
                self._on_transition(step.source, target, reason)
            except Exception as e:
                logger.error(f"[{self._session_id}] Transition listener failed: {e}")

    def set_mode(self, mode: SessionMode) -> None:
        if mode != self._mode:
            logger.info(f"[{self._session_id}] MODE: {self._mode.value} → {mode.value}")
            self._mode = mode
