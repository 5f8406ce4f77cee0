"""
NudgeCoach — Memory Persistence Gateway

Summarises a finished session into durable facts. Strictly best-effort:
failures are logged and swallowed, and the background save is never
awaited by teardown.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import List, Optional, Set

from ..core.errors import MemorySaveFailure
from ..core.interfaces import MemoryBackend
from ..core.models import MemoryExtractionRequest, MemoryExtractionResult, Message, Role

logger = logging.getLogger("nudgecoach.memory")


class MemoryGateway:

    def __init__(self, backend: MemoryBackend, session_id: str = "") -> None:
        self.session_id = session_id
        self._backend = backend
        # Strong references so fire-and-forget saves are not garbage collected
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def build_request(
        self,
        messages: List[Message],
        task_description: str,
        user_id: Optional[str],
        duration_seconds: int,
        task_completed: bool,
        task_id: Optional[str] = None,
        additional_context: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[MemoryExtractionRequest]:
        """None when there is nothing worth saving."""
        if not user_id:
            logger.info(f"[{self.session_id}] Memory save skipped: no user")
            return None

        real = [m for m in messages if not m.is_virtual and m.content.strip()]
        if not real:
            logger.info(f"[{self.session_id}] Memory save skipped: no real messages")
            return None

        now = now or datetime.now()
        system_content = f'User was working on task: "{task_description}"'
        if additional_context:
            system_content += f"\n{additional_context}"

        payload_messages = [{"role": "system", "content": system_content}]
        payload_messages += [
            {"role": "user" if m.role == Role.USER else "assistant", "content": m.content}
            for m in real
        ]

        return MemoryExtractionRequest(
            user_id=user_id,
            task_description=task_description,
            messages=payload_messages,
            local_date=now.date().isoformat(),
            metadata={
                "source": "ai_coach_session",
                "sessionDuration": duration_seconds,
                "timestamp": now.isoformat(),
                "task_completed": task_completed,
                "task_id": task_id,
                "actual_duration_minutes": round(duration_seconds / 60),
            },
        )

    async def save(self, request: MemoryExtractionRequest) -> Optional[MemoryExtractionResult]:
        try:
            result = await self._backend.extract_memories(request)
        except MemorySaveFailure as e:
            logger.warning(f"[{self.session_id}] Memory save failed: {e}")
            return None
        except Exception as e:
            logger.error(f"[{self.session_id}] Memory save error: {e}", exc_info=True)
            return None

        logger.info(
            f"[{self.session_id}] Memory saved: extracted={result.extracted} "
            f"saved={result.saved} merged={result.merged}"
        )
        return result

    def persist_in_background(self, request: MemoryExtractionRequest) -> asyncio.Task:
        task = asyncio.create_task(self.save(request), name=f"memory-{self.session_id}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for in-flight saves (server shutdown)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
