from __future__ import annotations

import time
from typing import Any, Dict, List

import pytest
from fastapi.testclient import TestClient

from nudgecoach import server
from nudgecoach.core.config import SchedulerConfig, SessionConfig
from nudgecoach.services.lifecycle import SessionLifecycleController
from tests.fakes import FakeBackend, FakeConnection, FakeDevices

SESSION_CFG = SessionConfig(
    countdown_seconds=300,
    tick_interval=3600.0,
    connection_timeout=2.0,
    camera_retry_delay=0.0,
    prior_session_grace=0.0,
    cleanup_guard_reset=0.01,
)
SCHEDULER_CFG = SchedulerConfig(cooldown=15.0, poll_interval=3600.0)


class FakeFactory:
    """Builds controllers on fakes and remembers what it built."""

    def __init__(self, microphone_delay: float = 0.0) -> None:
        self.microphone_delay = microphone_delay
        self.controllers: List[SessionLifecycleController] = []
        self.devices: List[FakeDevices] = []
        self.connections: List[FakeConnection] = []

    def __call__(self, session_id: str, **callbacks: Any) -> SessionLifecycleController:
        devices = FakeDevices(microphone_delay=self.microphone_delay)
        connection = FakeConnection()
        controller = SessionLifecycleController(
            session_id=session_id,
            connection=connection,
            devices=devices,
            backend=FakeBackend(),
            config=SESSION_CFG,
            scheduler_config=SCHEDULER_CFG,
            **callbacks,
        )
        self.devices.append(devices)
        self.connections.append(connection)
        self.controllers.append(controller)
        return controller


@pytest.fixture
def factory(monkeypatch) -> FakeFactory:
    built = FakeFactory()
    monkeypatch.setattr(server.registry, "_factory", built)
    return built


def _receive_until(ws, msg_type: str, limit: int = 50) -> Dict[str, Any]:
    for _ in range(limit):
        message = ws.receive_json()
        if message["type"] == msg_type:
            return message
    raise AssertionError(f"no {msg_type} message within {limit} messages")


def _wait_for(condition, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


def test_health() -> None:
    with TestClient(server.app) as client:
        body = client.get("/health").json()
    assert body["status"] == "ok"
    assert "active_sessions" in body


def test_start_and_end_session(factory: FakeFactory) -> None:
    with TestClient(server.app) as client:
        with client.websocket_connect("/ws/session") as ws:
            ws.send_json({"type": "start_session", "task": "wash the dishes", "user_id": "u1"})
            started = _receive_until(ws, "session_started")
            assert started["data"]["state"] == "active"
            assert started["data"]["time_remaining"] == 300

            session_id = started["data"]["session_id"]
            detail = client.get(f"/session/{session_id}").json()
            assert detail["snapshot"]["active"] is True
            assert "start_to_connected_ms" in detail["latency"]["deltas"]

            ws.send_json({"type": "end_session"})
            ended = _receive_until(ws, "session_ended")
            assert ended["data"]["state"] == "ended"

    assert factory.devices[0].release_calls == 1
    assert factory.connections[0].disconnect_calls == 1


def test_empty_task_is_rejected(factory: FakeFactory) -> None:
    with TestClient(server.app) as client:
        with client.websocket_connect("/ws/session") as ws:
            ws.send_json({"type": "start_session", "task": "   "})
            error = _receive_until(ws, "error")
            assert error["message"] == "Task description required"
    assert factory.connections[0].connect_calls == 0


def test_ping_pong_and_idle_commands(factory: FakeFactory) -> None:
    with TestClient(server.app) as client:
        with client.websocket_connect("/ws/session") as ws:
            ws.send_text("not json")
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

            ws.send_json({"type": "send_message", "text": "hello?"})
            assert _receive_until(ws, "error")["message"] == "No active session"

            ws.send_json({"type": "complete_task"})
            assert _receive_until(ws, "error")["message"] == "No active session"


def test_complete_task_reports_completion(factory: FakeFactory) -> None:
    with TestClient(server.app) as client:
        with client.websocket_connect("/ws/session") as ws:
            ws.send_json({"type": "start_session", "task": "stretch", "task_id": "t-1"})
            _receive_until(ws, "session_started")

            ws.send_json({"type": "complete_task"})
            completed = _receive_until(ws, "session_completed")
            assert completed["data"]["task_id"] == "t-1"
            assert completed["data"]["task_completed"] is True


def test_disconnect_stops_controller(factory: FakeFactory) -> None:
    with TestClient(server.app) as client:
        with client.websocket_connect("/ws/session") as ws:
            ws.send_json({"type": "start_session", "task": "wash the dishes"})
            _receive_until(ws, "session_started")
            assert server.registry.active_count == 1

        assert _wait_for(lambda: server.registry.active_count == 0)

    assert factory.devices[0].release_calls == 1
    assert not factory.connections[0].connected


def test_socket_closed_while_start_in_flight(monkeypatch) -> None:
    built = FakeFactory(microphone_delay=0.5)
    monkeypatch.setattr(server.registry, "_factory", built)

    with TestClient(server.app) as client:
        with client.websocket_connect("/ws/session") as ws:
            ws.send_json({"type": "start_session", "task": "wash the dishes"})
            snapshot = _receive_until(ws, "snapshot")
            assert snapshot["data"]["connecting"] is True

        assert _wait_for(lambda: server.registry.active_count == 0)

    devices = built.devices[0]
    assert devices.release_calls >= 1
    assert not devices.microphone_enabled
    assert built.connections[0].connect_calls == 0
    assert built.controllers[0].state.value == "ended"
