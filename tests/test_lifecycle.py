from __future__ import annotations

import asyncio
from typing import List, Optional

import pytest

from nudgecoach.core.clock import ManualClock
from nudgecoach.core.config import SchedulerConfig, SessionConfig, ToneConfig
from nudgecoach.core.errors import (
    BackendConfigError,
    ConnectionTimeout,
    PermissionDenied,
    TransientDeviceError,
)
from nudgecoach.core.models import (
    ConnectionClosed,
    Message,
    Role,
    SessionCompletion,
    StartSessionOptions,
    TranscriptFragment,
    TurnComplete,
    UserState,
    UserStateReport,
)
from nudgecoach.core.state_machine import SessionMode, SessionState
from nudgecoach.services.lifecycle import SessionLifecycleController
from tests.fakes import FakeBackend, FakeConnection, FakeDevices, RecordingGateway

SESSION_CFG = SessionConfig(
    countdown_seconds=300,
    tick_interval=3600.0,
    connection_timeout=0.2,
    camera_max_attempts=2,
    camera_retry_delay=0.0,
    prior_session_grace=0.0,
    cleanup_guard_reset=0.01,
)
# Large poll interval: only the opening greeting fires during a test
SCHEDULER_CFG = SchedulerConfig(cooldown=15.0, poll_interval=3600.0, initial_delay=0.0)


class Harness:
    def __init__(
        self,
        connection: Optional[FakeConnection] = None,
        devices: Optional[FakeDevices] = None,
        backend: Optional[FakeBackend] = None,
    ) -> None:
        self.log: List[str] = []
        self.clock = ManualClock()
        self.connection = connection or FakeConnection()
        self.connection.log = self.log
        self.devices = devices or FakeDevices()
        self.devices.log = self.log
        self.backend = backend or FakeBackend()
        self.gateway = RecordingGateway(self.backend, self.log)
        self.completions: List[SessionCompletion] = []
        self.states: List[str] = []
        self.messages: List[Message] = []

        def on_completion(completion: SessionCompletion) -> None:
            self.log.append("completion")
            self.completions.append(completion)

        self.controller = SessionLifecycleController(
            session_id="test",
            connection=self.connection,
            devices=self.devices,
            backend=self.backend,
            memory=self.gateway,
            rewards=self.backend,
            call_recorder=self.backend,
            on_completion=on_completion,
            on_message=self.messages.append,
            on_state_change=lambda snap: self.states.append(snap.state),
            config=SESSION_CFG,
            tone_config=ToneConfig(),
            scheduler_config=SCHEDULER_CFG,
            clock=self.clock,
        )

    async def start(self, **options) -> bool:
        options.setdefault("user_id", "user-1")
        options.setdefault("task_id", "task-9")
        return await self.controller.start_session("wash the dishes", StartSessionOptions(**options))


async def _settle(rounds: int = 50) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def test_start_reaches_active_with_greeting() -> None:
    async def _run() -> None:
        h = Harness()
        assert await h.start()
        await _settle()

        c = h.controller
        assert c.state == SessionState.ACTIVE
        assert c.mode == SessionMode.MULTIMODAL
        assert c.camera_enabled
        assert c.observing
        assert c.time_remaining == 300
        assert h.connection.system_instruction == "You are a coach."
        assert h.connection.sent_text[0].startswith("[GREETING]")
        assert "connecting" in h.states and "active" in h.states

        await c.end_session()

    asyncio.run(_run())


def test_system_instruction_request_carries_local_time() -> None:
    async def _run() -> None:
        h = Harness()
        await h.start(user_name="Sam", preferred_languages=["en"])

        request = h.backend.requests[0]
        assert request.task_description == "wash the dishes"
        assert request.local_time == "14:05 (24-hour format)"
        assert request.local_date == "Monday, May 6"
        assert request.to_payload()["preferredLanguages"] == ["en"]

        await h.controller.end_session()

    asyncio.run(_run())


def test_custom_instruction_skips_backend() -> None:
    async def _run() -> None:
        h = Harness()
        await h.start(custom_instruction="Be brief.")
        assert h.backend.requests == []
        assert h.connection.system_instruction == "Be brief."
        await h.controller.end_session()

    asyncio.run(_run())


def test_camera_denied_degrades_to_audio_only() -> None:
    async def _run() -> None:
        h = Harness(devices=FakeDevices(camera_errors=[PermissionDenied("camera", "denied")]))

        assert await h.start()

        assert h.controller.is_active
        assert h.controller.mode == SessionMode.AUDIO_ONLY
        assert not h.controller.camera_enabled
        assert h.devices.camera_attempts == 1
        await h.controller.end_session()

    asyncio.run(_run())


def test_transient_camera_error_is_retried() -> None:
    async def _run() -> None:
        h = Harness(devices=FakeDevices(camera_errors=[TransientDeviceError("camera", "busy")]))
        assert await h.start()
        assert h.devices.camera_attempts == 2
        assert h.controller.camera_enabled
        await h.controller.end_session()

    asyncio.run(_run())


def test_camera_gives_up_after_bounded_attempts() -> None:
    async def _run() -> None:
        errors = [TransientDeviceError("camera", "busy") for _ in range(5)]
        h = Harness(devices=FakeDevices(camera_errors=errors))
        assert await h.start()
        assert h.devices.camera_attempts == SESSION_CFG.camera_max_attempts
        assert h.controller.mode == SessionMode.AUDIO_ONLY
        await h.controller.end_session()

    asyncio.run(_run())


def test_microphone_failure_aborts_and_releases() -> None:
    async def _run() -> None:
        h = Harness(devices=FakeDevices(microphone_error=TransientDeviceError("microphone", "no input")))

        with pytest.raises(TransientDeviceError):
            await h.start()

        assert h.controller.state == SessionState.ENDED
        assert h.controller.last_error
        assert h.devices.release_calls == 1
        assert h.connection.connect_calls == 0

    asyncio.run(_run())


def test_backend_failure_releases_everything() -> None:
    async def _run() -> None:
        h = Harness(backend=FakeBackend(instruction_error=BackendConfigError("config down")))

        with pytest.raises(BackendConfigError):
            await h.start()

        assert not h.devices.camera_enabled
        assert not h.devices.microphone_enabled
        assert h.devices.release_calls == 1
        assert not h.connection.connected
        assert h.controller.snapshot().error == "config down"

    asyncio.run(_run())


def test_slow_acquisition_times_out() -> None:
    async def _run() -> None:
        h = Harness(backend=FakeBackend(credential_delay=5.0))

        with pytest.raises(ConnectionTimeout) as info:
            await h.start()

        assert info.value.stage == "session start"
        assert h.devices.release_calls == 1
        assert h.controller.state == SessionState.ENDED

    asyncio.run(_run())


def test_slow_connect_times_out_and_disconnects() -> None:
    async def _run() -> None:
        h = Harness(connection=FakeConnection(connect_delay=5.0))

        with pytest.raises(ConnectionTimeout) as info:
            await h.start()

        assert info.value.stage == "connect"
        assert h.connection.disconnect_calls == 1
        assert h.devices.release_calls == 1

    asyncio.run(_run())


def test_concurrent_cleanup_releases_once() -> None:
    async def _run() -> None:
        h = Harness()
        await h.start()

        await asyncio.gather(h.controller.cleanup(), h.controller.cleanup())
        await asyncio.sleep(0.05)
        await h.controller.cleanup()
        await asyncio.sleep(0.05)

        assert h.devices.release_calls == 1
        assert h.connection.disconnect_calls == 1
        assert h.controller.state == SessionState.ENDED
        assert not h.controller.cleanup_in_progress

    asyncio.run(_run())


def test_second_start_while_in_flight_is_ignored() -> None:
    async def _run() -> None:
        h = Harness(devices=FakeDevices(microphone_delay=0.05))

        first = asyncio.create_task(h.start())
        await asyncio.sleep(0)
        assert await h.start() is False
        assert await first is True
        assert h.connection.connect_calls == 1

        await h.controller.end_session()

    asyncio.run(_run())


def test_restart_tears_down_prior_session() -> None:
    async def _run() -> None:
        h = Harness()
        await h.start()
        assert await h.start()
        await _settle()

        assert h.connection.connect_calls == 2
        assert h.connection.disconnect_calls == 1
        assert h.devices.release_calls == 1
        assert h.controller.state == SessionState.ACTIVE

        await h.controller.end_session()

    asyncio.run(_run())


def test_force_terminate_supersedes_in_flight_start() -> None:
    async def _run() -> None:
        h = Harness(devices=FakeDevices(microphone_delay=0.05))

        start = asyncio.create_task(h.start())
        await asyncio.sleep(0.01)
        h.controller.force_terminate(reason="logout")

        assert await start is False
        await h.controller.drain()

        assert h.connection.connect_calls == 0
        assert not h.devices.microphone_enabled
        assert h.controller.state == SessionState.ENDED
        assert h.controller.mode == SessionMode.UNAVAILABLE

    asyncio.run(_run())


def test_countdown_zero_runs_completion_sequence_once() -> None:
    async def _run() -> None:
        h = Harness()
        await h.start()
        await h.controller.send_text("okay, starting now")
        h.clock.advance(300)

        for _ in range(300):
            h.controller.countdown.tick()
        await _settle()
        h.controller.countdown.tick()
        await h.controller.drain()

        assert h.log == ["connect", "memory", "disconnect", "release", "completion"]
        assert len(h.completions) == 1
        completion = h.completions[0]
        assert completion.reason == "countdown"
        assert completion.duration_seconds == 300
        assert completion.task_id == "task-9"
        assert not completion.task_completed
        assert h.backend.awards[0]["event"] == "session_countdown"

        request = h.gateway.requests[0]
        contents = [m["content"] for m in request.messages]
        assert contents[0] == 'User was working on task: "wash the dishes"'
        assert "okay, starting now" in contents
        assert not any(c.startswith("[GREETING]") for c in contents)
        assert h.backend.extractions

    asyncio.run(_run())


def test_complete_task_reports_completion() -> None:
    async def _run() -> None:
        h = Harness()
        await h.start()
        await h.controller.send_text("done!")

        assert await h.controller.complete_task()
        assert not await h.controller.complete_task()
        await h.controller.drain()

        assert len(h.completions) == 1
        assert h.completions[0].task_completed
        assert h.completions[0].reason == "task_completed"
        assert h.gateway.requests[0].metadata["task_completed"] is True

    asyncio.run(_run())


def test_end_session_without_user_skips_memory() -> None:
    async def _run() -> None:
        h = Harness()
        await h.start(user_id=None)
        await h.controller.send_text("hello")
        await h.controller.end_session()
        await h.controller.drain()

        assert "memory" not in h.log
        assert h.completions == []

    asyncio.run(_run())


def test_resist_marker_sends_tone_instruction() -> None:
    async def _run() -> None:
        h = Harness()
        await h.start()
        await _settle()

        h.connection.push(TranscriptFragment(Role.USER, "I really don't feel like it"))
        h.connection.push(TranscriptFragment(Role.ASSISTANT, "[RESIST] I hear you."))
        h.connection.push(TurnComplete())
        await _settle()

        shifts = [t for t in h.connection.sent_text if t.startswith("[TONE_SHIFT]")]
        assert len(shifts) == 1
        assert "style=acknowledge_tiny" in shifts[0]
        assert not h.controller.observing
        assert h.controller.snapshot().tone == "acknowledge_tiny"

        contents = [m.content for m in h.controller.history.messages]
        assert "I really don't feel like it" in contents
        assert "I hear you." in contents

        await h.controller.end_session()

    asyncio.run(_run())


def test_user_state_report_drives_tone() -> None:
    async def _run() -> None:
        h = Harness()
        await h.start()

        h.connection.push(UserStateReport(UserState.RESISTING, "excuse"))
        await _settle()
        assert h.controller.tone.state.consecutive_rejections == 1

        h.connection.push(UserStateReport(UserState.COOPERATING))
        await _settle()
        assert h.controller.tone.state.consecutive_rejections == 0

        await h.controller.end_session()

    asyncio.run(_run())


def test_remote_close_cleans_up() -> None:
    async def _run() -> None:
        h = Harness()
        await h.start()

        h.connection.push(ConnectionClosed(reason="server went away"))
        await _settle()
        await h.controller.drain()

        assert h.controller.state == SessionState.ENDED
        assert h.controller.last_error == "server went away"
        assert h.devices.release_calls == 1
        # The transport still exits its live context after a remote close
        assert h.connection.disconnect_calls == 1

    asyncio.run(_run())


def test_outbound_dropped_when_not_active() -> None:
    async def _run() -> None:
        h = Harness()
        assert not await h.controller.send_text("anyone?")
        assert h.connection.sent_text == []

    asyncio.run(_run())


def test_reset_session_returns_to_idle_without_saving() -> None:
    async def _run() -> None:
        h = Harness()
        await h.start()
        await h.controller.send_text("hello")

        await h.controller.reset_session()
        await h.controller.drain()

        assert h.controller.state == SessionState.IDLE
        assert len(h.controller.history) == 0
        assert h.controller.time_remaining == 0
        assert "memory" not in h.log
        assert h.devices.release_calls == 1

    asyncio.run(_run())


def test_typed_message_emits_pending_voice_turn_first() -> None:
    async def _run() -> None:
        h = Harness()
        await h.start()
        await _settle()

        h.connection.push(TranscriptFragment(Role.USER, "so I was thinking"))
        await _settle()
        assert await h.controller.send_text("actually, let's start")

        spoken = [m.content for m in h.messages if m.role == Role.USER and not m.is_virtual]
        assert spoken == ["so I was thinking", "actually, let's start"]

        await h.controller.end_session()

    asyncio.run(_run())
