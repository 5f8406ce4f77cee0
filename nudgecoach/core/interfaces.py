"""
NudgeCoach — Layer Interfaces

Protocol definitions for the collaborators the session orchestrator consumes:
  1. Transport  — the streaming AI conversation (connect, send, event channel)
  2. Devices    — camera and microphone handles
  3. Backend    — system instruction, credential, memory, rewards, call records

The Lifecycle Controller talks to these protocols only — never to a
concrete SDK — so every collaborator can be replaced by a fake in tests.
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Protocol, runtime_checkable

from .models import (
    ConnectionCredential,
    ConnectionEvent,
    MemoryExtractionRequest,
    MemoryExtractionResult,
    SystemInstructionPayload,
    SystemInstructionRequest,
)

# Media sinks: the controller decides whether a chunk reaches the connection
FrameSink = Callable[[bytes], Awaitable[None]]
AudioSink = Callable[[bytes], Awaitable[None]]
SpeechStateSink = Callable[[bool], None]


# ═══════════════════════════════════════════════════════════════════════════
# Transport Layer: streaming AI conversation
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class StreamingConnection(Protocol):
    """One realtime conversation with the model."""

    @property
    def is_connected(self) -> bool:
        ...

    async def connect(
        self,
        system_instruction: str,
        credential: ConnectionCredential,
        voice: Optional[str] = None,
    ) -> None:
        ...

    async def disconnect(self) -> None:
        """Close the conversation. Safe to call repeatedly."""
        ...

    async def send_text(self, text: str) -> None:
        ...

    async def send_audio(self, pcm: bytes) -> None:
        ...

    async def send_video(self, jpeg: bytes) -> None:
        ...

    def events(self) -> AsyncIterator[ConnectionEvent]:
        """Transcript fragments, turn boundaries and closure, in arrival order."""
        ...


# ═══════════════════════════════════════════════════════════════════════════
# Device Layer: camera / microphone
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class MediaDevices(Protocol):

    @property
    def camera_enabled(self) -> bool:
        ...

    @property
    def microphone_enabled(self) -> bool:
        ...

    async def acquire_camera(self, on_frame: FrameSink) -> None:
        """Raises PermissionDenied or TransientDeviceError."""
        ...

    async def acquire_microphone(self, on_audio: AudioSink, on_speech: Optional[SpeechStateSink] = None) -> None:
        ...

    def release(self) -> None:
        """Stop every device synchronously. Idempotent."""
        ...


# ═══════════════════════════════════════════════════════════════════════════
# Backend Layer: configuration, memory, rewards
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class SessionBackend(Protocol):

    async def fetch_system_instruction(self, request: SystemInstructionRequest) -> SystemInstructionPayload:
        """Raises BackendConfigError."""
        ...

    async def fetch_credential(self) -> ConnectionCredential:
        """Raises BackendConfigError."""
        ...


@runtime_checkable
class MemoryBackend(Protocol):

    async def extract_memories(self, request: MemoryExtractionRequest) -> MemoryExtractionResult:
        """Raises MemorySaveFailure."""
        ...


@runtime_checkable
class RewardSink(Protocol):

    async def award(self, event: str, payload: Dict[str, Any]) -> None:
        ...


@runtime_checkable
class CallRecorder(Protocol):

    async def record_call_end(self, call_record_id: str, duration_seconds: int) -> None:
        ...
