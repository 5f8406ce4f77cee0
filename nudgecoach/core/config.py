"""
NudgeCoach — Configuration

Centralised settings from environment variables.
All tuneable constants live here — zero magic numbers in other files.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv
import certifi

os.environ.setdefault("SSL_CERT_FILE", certifi.where())
os.environ.setdefault("REQUESTS_CA_BUNDLE", certifi.where())

load_dotenv()


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ServerConfig:
    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "8080"))
    cors_origins: tuple[str, ...] = (
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
    )
    # How often the WebSocket pushes a state snapshot
    snapshot_interval: float = 1.0


# ---------------------------------------------------------------------------
# Backend (edge functions)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BackendConfig:
    """Base URL, credentials and endpoint names of the coaching backend."""
    functions_url: str = os.getenv("NUDGECOACH_FUNCTIONS_URL", "http://localhost:54321/functions/v1")
    anon_key: str = os.getenv("NUDGECOACH_ANON_KEY", "")
    request_timeout: float = float(os.getenv("NUDGECOACH_BACKEND_TIMEOUT", "10"))

    system_instruction_path: str = "get-system-instruction"
    token_path: str = "gemini-token"
    memory_path: str = "memory-extractor"
    call_record_path: str = "call-records"
    rewards_path: str = "award-rewards"

    # Lifetime of the ephemeral realtime token (seconds)
    token_ttl: int = 1800

    @property
    def has_credentials(self) -> bool:
        return bool(self.functions_url and self.anon_key)


# ---------------------------------------------------------------------------
# Session lifecycle tunables
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SessionConfig:
    # Default countdown length (seconds)
    countdown_seconds: int = int(os.getenv("NUDGECOACH_SESSION_SECONDS", "300"))
    # Countdown decrement interval (seconds)
    tick_interval: float = 1.0
    # One shared timeout for media + config + credential, and again for connect
    connection_timeout: float = 15.0
    # Total camera attempts (first try + retries)
    camera_max_attempts: int = 2
    camera_retry_delay: float = 1.0
    # Pause after tearing down a still-connected prior session
    prior_session_grace: float = 0.15
    # Cleanup re-entry guard stays up this long after completion
    cleanup_guard_reset: float = 0.1


# ---------------------------------------------------------------------------
# Tone adaptation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ToneConfig:
    # Minimum time a committed tone stays before another can supersede it
    min_tone_change_interval: float = 10.0
    # Identical signals closer than this are treated as duplicate dispatch
    debounce_window: float = 0.3


# ---------------------------------------------------------------------------
# Virtual message scheduler
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SchedulerConfig:
    cooldown: float = 15.0
    poll_interval: float = 5.0
    initial_delay: float = 0.0


# ---------------------------------------------------------------------------
# Voice activity detection
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VADConfig:
    sample_rate: int = 16000
    chunk_ms: int = 100
    # Levels are RMS scaled to 0–100
    rise_threshold: float = 30.0
    fall_offset: float = 12.0
    fall_floor: float = 5.0
    min_speech_duration: float = 0.25

    @property
    def fall_threshold(self) -> float:
        return max(self.fall_floor, self.rise_threshold - self.fall_offset)

    @property
    def chunk_samples(self) -> int:
        return int(self.sample_rate * self.chunk_ms / 1000)


# ---------------------------------------------------------------------------
# Local media
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MediaConfig:
    camera_index: int = int(os.getenv("NUDGECOACH_CAMERA_INDEX", "0"))
    # Frames per second forwarded to the model
    video_fps: float = 1.0
    jpeg_quality: int = 70
    max_frame_width: int = 640
    speaker_sample_rate: int = 24000


# ---------------------------------------------------------------------------
# Realtime model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RealtimeConfig:
    model: str = os.getenv("NUDGECOACH_LIVE_MODEL", "gemini-2.5-flash-native-audio-preview-09-2025")
    voice: str = os.getenv("NUDGECOACH_VOICE", "Puck")
    api_version: str = "v1alpha"
    input_mime_type: str = "audio/pcm;rate=16000"


# ---------------------------------------------------------------------------
# Singletons
# ---------------------------------------------------------------------------

server_cfg = ServerConfig()
backend_cfg = BackendConfig()
session_cfg = SessionConfig()
tone_cfg = ToneConfig()
scheduler_cfg = SchedulerConfig()
vad_cfg = VADConfig()
media_cfg = MediaConfig()
realtime_cfg = RealtimeConfig()
