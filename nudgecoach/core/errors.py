"""
NudgeCoach — Error Taxonomy

Capability failures (camera) degrade the session; connection and
configuration failures abort it after every resource is released.
"""

from __future__ import annotations


class CoachSessionError(Exception):
    """Base class for every classified session failure."""


# ── Devices ─────────────────────────────────────────────────────────────

class DeviceError(CoachSessionError):
    def __init__(self, device: str, message: str = "") -> None:
        self.device = device
        super().__init__(f"{device}: {message}" if message else device)


class PermissionDenied(DeviceError):
    """The user (or OS) refused access. Never retried."""


class TransientDeviceError(DeviceError):
    """Device busy or briefly unavailable. Retried a bounded number of times."""


# ── Connection / backend ────────────────────────────────────────────────

class ConnectionTimeout(CoachSessionError):
    def __init__(self, stage: str, timeout: float) -> None:
        self.stage = stage
        self.timeout = timeout
        super().__init__(f"{stage} timed out after {timeout:g}s")


class BackendConfigError(CoachSessionError):
    """System instruction or credential could not be obtained."""


class MemorySaveFailure(CoachSessionError):
    """Memory extraction failed. Logged and swallowed by the gateway."""


class SessionStartError(CoachSessionError):
    """Unclassified failure while starting a session."""
