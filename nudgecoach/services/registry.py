"""
NudgeCoach — Session Registry

Maps session_id → SessionLifecycleController. Single event loop, no locks.
Extracted so the server never holds controllers in ad-hoc globals.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Optional

from .lifecycle import SessionLifecycleController

logger = logging.getLogger("nudgecoach.registry")

ControllerFactory = Callable[..., SessionLifecycleController]


class SessionRegistry:
    """Maps session_id → SessionLifecycleController."""

    def __init__(self, factory: ControllerFactory) -> None:
        self._factory = factory
        self._controllers: Dict[str, SessionLifecycleController] = {}

    def create(self, session_id: str, **callbacks) -> SessionLifecycleController:
        if session_id in self._controllers:
            raise ValueError(f"Session {session_id} already registered")
        controller = self._factory(session_id=session_id, **callbacks)
        self._controllers[session_id] = controller
        logger.info(f"SessionRegistry: created {session_id} (total: {len(self._controllers)})")
        return controller

    async def stop(self, session_id: str) -> bool:
        controller = self._controllers.pop(session_id, None)
        if controller is None:
            return False
        await controller.end_session()
        logger.info(f"SessionRegistry: removed {session_id} (total: {len(self._controllers)})")
        return True

    async def stop_all(self) -> None:
        for sid in list(self._controllers.keys()):
            await self.stop(sid)

    def get(self, session_id: str) -> Optional[SessionLifecycleController]:
        return self._controllers.get(session_id)

    @property
    def active_count(self) -> int:
        return len(self._controllers)

    @property
    def all_sessions(self) -> Dict[str, SessionLifecycleController]:
        return dict(self._controllers)
