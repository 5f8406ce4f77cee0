from __future__ import annotations

import asyncio

import pytest

from nudgecoach.services.lifecycle import SessionLifecycleController
from nudgecoach.services.registry import SessionRegistry
from tests.fakes import FakeBackend, FakeConnection, FakeDevices


def _factory(session_id: str, **callbacks) -> SessionLifecycleController:
    return SessionLifecycleController(
        session_id=session_id,
        connection=FakeConnection(),
        devices=FakeDevices(),
        backend=FakeBackend(),
        **callbacks,
    )


def test_create_get_and_stop() -> None:
    async def _run() -> None:
        registry = SessionRegistry(_factory)
        controller = registry.create("a")
        assert registry.get("a") is controller
        assert registry.active_count == 1

        with pytest.raises(ValueError):
            registry.create("a")

        assert await registry.stop("a")
        assert not await registry.stop("a")
        assert registry.get("a") is None

    asyncio.run(_run())


def test_callbacks_reach_controller() -> None:
    async def _run() -> None:
        states = []
        registry = SessionRegistry(_factory)
        registry.create("a", on_state_change=lambda snap: states.append(snap.state))
        await registry.stop("a")
        assert states[-1] == "ended"

    asyncio.run(_run())


def test_stop_all() -> None:
    async def _run() -> None:
        registry = SessionRegistry(_factory)
        for sid in ("a", "b", "c"):
            registry.create(sid)
        await registry.stop_all()
        assert registry.active_count == 0
        assert registry.all_sessions == {}

    asyncio.run(_run())
