"""
NudgeCoach — Data Models

Dataclasses for every piece of data flowing through the orchestrator:
conversation history, tone state, scheduler cooldowns, connection events,
backend payloads and the snapshots handed to the presentation layer.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Union


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------

class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class Message:
    """One entry of the append-only conversation history."""
    role: Role = Role.ASSISTANT
    content: str = ""
    timestamp: float = field(default_factory=time.time)
    is_virtual: bool = False    # Scheduler prompts; never sent to memory
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["role"] = self.role.value
        return d


# ---------------------------------------------------------------------------
# Tone
# ---------------------------------------------------------------------------

class Tone(str, Enum):
    FRIENDLY = "friendly"
    ACKNOWLEDGE_TINY = "acknowledge_tiny"
    CURIOUS_MEMORY = "curious_memory"
    GENTLE = "gentle"
    TOUGH_LOVE = "tough_love"
    ABSURD_HUMOR = "absurd_humor"


class EmotionalState(str, Enum):
    UNKNOWN = "unknown"
    LOW_MOOD = "low_mood"
    PROCRASTINATING = "procrastinating"


class ResistanceSignal(str, Enum):
    """Where a resistance detection came from. Only one variant is emotional."""
    AI_DETECTED = "ai_detected"
    AI_DETECTED_EMOTIONAL = "ai_detected_emotional"
    EXPLICIT_REFUSAL = "explicit_refusal"
    EXCUSE = "excuse"
    SILENCE = "silence"
    TOPIC_CHANGE = "topic_change"
    NEGATIVE_SENTIMENT = "negative_sentiment"

    @property
    def is_emotional(self) -> bool:
        return self is ResistanceSignal.AI_DETECTED_EMOTIONAL


@dataclass
class ToneState:
    current_tone: Tone = Tone.FRIENDLY
    consecutive_rejections: int = 0
    total_rejections: int = 0
    emotional_state: EmotionalState = EmotionalState.UNKNOWN
    last_tone_change: Optional[float] = None  # monotonic seconds
    cycle_index: int = 0
    has_started_action: bool = False

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["current_tone"] = self.current_tone.value
        d["emotional_state"] = self.emotional_state.value
        return d


# ---------------------------------------------------------------------------
# Virtual message scheduler
# ---------------------------------------------------------------------------

@dataclass
class SchedulerCooldownState:
    last_virtual_message: Optional[float] = None
    last_turn_complete: Optional[float] = None
    last_user_utterance: Optional[float] = None
    user_speaking: bool = False
    ai_speaking: bool = False
    virtual_reply_pending: bool = False
    virtual_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Connection events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TranscriptFragment:
    role: Role
    text: str


@dataclass(frozen=True)
class TurnComplete:
    pass


@dataclass(frozen=True)
class Interrupted:
    pass


class UserState(str, Enum):
    RESISTING = "resisting"
    COOPERATING = "cooperating"
    NEUTRAL = "neutral"


@dataclass(frozen=True)
class UserStateReport:
    """Model-side classification delivered through a function call."""
    state: UserState
    reason: str = ""


@dataclass(frozen=True)
class ConnectionClosed:
    reason: str = ""


ConnectionEvent = Union[TranscriptFragment, TurnComplete, Interrupted, UserStateReport, ConnectionClosed]


# ---------------------------------------------------------------------------
# Session start / backend payloads
# ---------------------------------------------------------------------------

@dataclass
class StartSessionOptions:
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    task_id: Optional[str] = None
    duration_seconds: Optional[int] = None
    preferred_languages: List[str] = field(default_factory=list)
    custom_instruction: Optional[str] = None
    chat_mode: str = "coach"
    voice: Optional[str] = None
    call_record_id: Optional[str] = None
    is_reconnect: bool = False
    context: Optional[str] = None


@dataclass
class SystemInstructionRequest:
    task_description: str
    user_name: Optional[str]
    preferred_languages: List[str]
    user_id: Optional[str]
    chat_mode: str
    local_time: str
    local_date: str
    local_date_iso: str
    is_reconnect: bool = False
    context: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "taskInput": self.task_description,
            "userName": self.user_name,
            "preferredLanguages": self.preferred_languages or None,
            "userId": self.user_id,
            "chatMode": self.chat_mode,
            "localTime": self.local_time,
            "localDate": self.local_date,
            "localDateISO": self.local_date_iso,
        }
        if self.is_reconnect:
            payload["isReconnect"] = True
            payload["context"] = self.context
        return payload


@dataclass
class SystemInstructionPayload:
    system_instruction: str
    retrieved_memories: List[str] = field(default_factory=list)
    success_record: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class ConnectionCredential:
    token: str


@dataclass
class ExtractedMemory:
    content: str
    tag: str = ""


@dataclass
class MemoryExtractionRequest:
    user_id: str
    task_description: str
    messages: List[Dict[str, str]]
    local_date: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "action": "extract",
            "userId": self.user_id,
            "messages": self.messages,
            "taskDescription": self.task_description,
            "localDate": self.local_date,
            "metadata": self.metadata,
        }


@dataclass
class MemoryExtractionResult:
    extracted: int = 0
    saved: int = 0
    merged: int = 0
    memories: List[ExtractedMemory] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Outward surfaces
# ---------------------------------------------------------------------------

@dataclass
class SessionCompletion:
    """Delivered to the task-management layer when a session finishes."""
    task_id: Optional[str]
    task_description: str
    duration_seconds: int
    reason: str = "countdown"      # "countdown" | "task_completed"
    task_completed: bool = False
    total_rejections_overcome: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SessionSnapshot:
    session_id: str = ""
    state: str = "idle"
    mode: str = "unavailable"
    connecting: bool = False
    active: bool = False
    observing: bool = False
    error: Optional[str] = None
    time_remaining: int = 0
    tone: str = Tone.FRIENDLY.value
    tone_description: str = ""
    camera_enabled: bool = False
    message_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
