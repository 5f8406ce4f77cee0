"""
NudgeCoach — Transcript Aggregation

Turns the connection's stream of partial transcript fragments into
coherent conversation turns:

  • repeated partial updates are dropped via a role+prefix fingerprint
  • consecutive user fragments accumulate and flush as ONE message the
    moment the assistant starts replying
  • the first chunk of each assistant turn is checked for a leading
    marker token ([RESIST], [ACCEPT], ...) exactly once per turn
  • bracketed control tags spoken by the user are neutralised so they
    cannot masquerade as system instructions
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Set

from ..core.models import Message, Role, TranscriptFragment

logger = logging.getLogger("nudgecoach.transcript")

FINGERPRINT_PREFIX = 50

# Tags the model treats as instructions when they appear in user turns
CONTROL_TAGS = (
    "TOOL_RESULT", "MODE_OVERRIDE", "COACH_NOTE", "CONTEXT", "LISTEN_FIRST",
    "GENTLE_REDIRECT", "ACCEPT_STOP", "PUSH_TINY_STEP", "TONE_SHIFT", "EMPATHY",
    "GREETING", "CHECK_IN", "STATUS", "CAMPFIRE_FAREWELL", "MEMORY_BOOST",
    "RESIST", "RESIST_EMOTIONAL", "ACCEPT", "ACTION_STARTED", "TASK_COMPLETED",
)

_CONTROL_TAG_RE = re.compile(r"\[(" + "|".join(CONTROL_TAGS) + r")((?::|\s)[^\]]*)?\]", re.IGNORECASE)
_NOISE_RE = re.compile(r"<noise>", re.IGNORECASE)
_BLOCK_RE = re.compile(r"\[(?:TOOL_RESULT|CONTEXT)\][\s\S]*?(?=\n\n|$)", re.IGNORECASE)
_WORD_RE = re.compile(r"\w", re.UNICODE)


class TurnMarker(str, Enum):
    """Leading token the assistant uses to classify the user's last turn."""
    RESIST = "RESIST"
    RESIST_EMOTIONAL = "RESIST_EMOTIONAL"
    ACCEPT = "ACCEPT"
    ACTION_STARTED = "ACTION_STARTED"


_MARKER_RE = re.compile(
    r"^\s*\[(" + "|".join(m.value for m in sorted(TurnMarker, key=lambda m: -len(m.value))) + r")\]\s*"
)


# ── Text helpers ─────────────────────────────────────────────────────────

def is_valid_user_speech(text: str) -> bool:
    """Punctuation- or whitespace-only fragments are transcription noise."""
    return bool(_WORD_RE.search(text or ""))


def sanitize_control_tags(text: str) -> str:
    """``[TAG]`` → ``(TAG)`` for every known control tag."""
    return _CONTROL_TAG_RE.sub(lambda m: f"({m.group(1)}{m.group(2) or ''})", text)


def clean_noise_markers(text: str) -> str:
    cleaned = _NOISE_RE.sub("", text)
    cleaned = _BLOCK_RE.sub("", cleaned)
    return normalize_text(cleaned)


def normalize_text(text: str) -> str:
    """Normalize spacing and punctuation for merged transcript text."""
    cleaned = " ".join(text.split())
    cleaned = re.sub(r"\s+([,.!?;:])", r"\1", cleaned)
    return cleaned.strip()


def split_marker(text: str) -> tuple[Optional[TurnMarker], str]:
    match = _MARKER_RE.match(text)
    if not match:
        return None, text
    return TurnMarker(match.group(1)), text[match.end():]


# ── History ──────────────────────────────────────────────────────────────

class ConversationHistory:
    """Append-only message log with non-decreasing timestamps."""

    def __init__(self, time_fn: Callable[[], float] = time.time) -> None:
        self._time_fn = time_fn
        self._messages: List[Message] = []

    def append(self, role: Role, content: str, is_virtual: bool = False) -> Message:
        ts = self._time_fn()
        if self._messages and ts < self._messages[-1].timestamp:
            ts = self._messages[-1].timestamp
        msg = Message(role=role, content=content, timestamp=ts, is_virtual=is_virtual)
        self._messages.append(msg)
        return msg

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    def real_messages(self) -> List[Message]:
        return [m for m in self._messages if not m.is_virtual]

    def clear(self) -> None:
        self._messages.clear()

    def __len__(self) -> int:
        return len(self._messages)


# ── Aggregator ───────────────────────────────────────────────────────────

@dataclass
class TranscriptUpdate:
    """What one ingested fragment changed."""
    flushed_user: Optional[Message] = None
    new_assistant_turn: bool = False
    marker: Optional[TurnMarker] = None
    accepted: bool = False


class TranscriptAggregator:

    def __init__(self, history: ConversationHistory, session_id: str = "") -> None:
        self.session_id = session_id
        self._history = history
        self._fingerprints: Set[str] = set()
        self._user_buffer = ""
        self._assistant_buffer = ""
        self._last_role: Optional[Role] = None

    @property
    def history(self) -> ConversationHistory:
        return self._history

    @property
    def pending_user_text(self) -> str:
        return clean_noise_markers(self._user_buffer)

    @property
    def pending_assistant_text(self) -> str:
        return normalize_text(self._assistant_buffer)

    def ingest(self, fragment: TranscriptFragment) -> TranscriptUpdate:
        text = fragment.text or ""
        if not text.strip():
            return TranscriptUpdate()

        fingerprint = f"{fragment.role.value}-{text[:FINGERPRINT_PREFIX]}"
        if fingerprint in self._fingerprints:
            return TranscriptUpdate()
        self._fingerprints.add(fingerprint)

        if fragment.role == Role.USER:
            return self._ingest_user(text)
        return self._ingest_assistant(text)

    def _ingest_user(self, text: str) -> TranscriptUpdate:
        if not is_valid_user_speech(text):
            return TranscriptUpdate()
        self._user_buffer += sanitize_control_tags(text)
        self._last_role = Role.USER
        return TranscriptUpdate(accepted=True)

    def _ingest_assistant(self, text: str) -> TranscriptUpdate:
        update = TranscriptUpdate(accepted=True)

        if self._last_role != Role.ASSISTANT:
            # First chunk of a new reply: the only place a marker can appear
            update.new_assistant_turn = True
            update.flushed_user = self.flush_user_buffer()
            update.marker, text = split_marker(text)
            if update.marker:
                logger.info(f"[{self.session_id}] Turn marker: {update.marker.value}")

        self._assistant_buffer += sanitize_control_tags(text)
        self._last_role = Role.ASSISTANT
        return update

    def flush_user_buffer(self) -> Optional[Message]:
        text = clean_noise_markers(self._user_buffer)
        self._user_buffer = ""
        if not text:
            return None
        msg = self._history.append(Role.USER, text)
        logger.debug(f"[{self.session_id}] User turn: {text[:80]}")
        return msg

    def complete_turn(self) -> Optional[Message]:
        """Close the assistant turn; its buffered text becomes one message."""
        text = normalize_text(self._assistant_buffer)
        self._assistant_buffer = ""
        self._last_role = None
        self._fingerprints.clear()
        if not text:
            return None
        return self._history.append(Role.ASSISTANT, text)

    def flush_pending(self) -> List[Message]:
        """Flush both buffers (session end)."""
        flushed = []
        user = self.flush_user_buffer()
        if user:
            flushed.append(user)
        if self._assistant_buffer.strip():
            assistant = self.complete_turn()
            if assistant:
                flushed.append(assistant)
        return flushed

    def record_typed_message(self, text: str) -> List[Message]:
        """
        Typed chat input bypasses the fragment path. Returns the flushed
        voice turn (if any) followed by the typed message.
        """
        recorded = []
        flushed = self.flush_user_buffer()
        if flushed:
            recorded.append(flushed)
        recorded.append(self._history.append(Role.USER, normalize_text(text)))
        return recorded

    def reset(self) -> None:
        self._fingerprints.clear()
        self._user_buffer = ""
        self._assistant_buffer = ""
        self._last_role = None
        self._history.clear()
