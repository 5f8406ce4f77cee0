"""
NudgeCoach — Backend Client

One httpx.AsyncClient against the coaching backend's edge functions:

  • get-system-instruction — persona prompt + retrieved memories
  • gemini-token           — ephemeral realtime credential
  • memory-extractor       — durable facts from a finished session
  • call-records           — call end bookkeeping
  • award-rewards          — completion rewards

Implements SessionBackend, MemoryBackend, RewardSink and CallRecorder.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from ..core.config import BackendConfig, backend_cfg
from ..core.errors import BackendConfigError, MemorySaveFailure
from ..core.models import (
    ConnectionCredential,
    ExtractedMemory,
    MemoryExtractionRequest,
    MemoryExtractionResult,
    SystemInstructionPayload,
    SystemInstructionRequest,
)

logger = logging.getLogger("nudgecoach.backend")


class BackendClient:

    def __init__(
        self,
        config: BackendConfig = backend_cfg,
        access_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._cfg = config
        headers = {"Content-Type": "application/json"}
        if config.anon_key:
            headers["apikey"] = config.anon_key
        bearer = access_token or config.anon_key
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        self._client = httpx.AsyncClient(
            base_url=config.functions_url.rstrip("/") + "/",
            headers=headers,
            timeout=config.request_timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._client.post(path, json=payload)
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected JSON object, got {type(data).__name__}")
        return data

    # ── Session configuration ───────────────────────────────────────

    async def fetch_system_instruction(self, request: SystemInstructionRequest) -> SystemInstructionPayload:
        try:
            data = await self._post(self._cfg.system_instruction_path, request.to_payload())
        except (httpx.HTTPError, ValueError) as e:
            raise BackendConfigError(f"System instruction fetch failed: {e}") from e

        instruction = data.get("systemInstruction")
        if not instruction:
            raise BackendConfigError("System instruction missing from backend response")

        memories = data.get("retrievedMemories") or []
        logger.info(f"System instruction fetched ({len(instruction)} chars, {len(memories)} memories)")
        return SystemInstructionPayload(
            system_instruction=instruction,
            retrieved_memories=[str(m) for m in memories],
            success_record=data.get("successRecord"),
        )

    async def fetch_credential(self) -> ConnectionCredential:
        try:
            data = await self._post(self._cfg.token_path, {"ttl": self._cfg.token_ttl})
        except (httpx.HTTPError, ValueError) as e:
            raise BackendConfigError(f"Credential fetch failed: {e}") from e

        token = data.get("token")
        if not token:
            raise BackendConfigError("Credential missing from backend response")
        return ConnectionCredential(token=token)

    # ── Memory ──────────────────────────────────────────────────────

    async def extract_memories(self, request: MemoryExtractionRequest) -> MemoryExtractionResult:
        try:
            data = await self._post(self._cfg.memory_path, request.to_payload())
        except (httpx.HTTPError, ValueError) as e:
            raise MemorySaveFailure(str(e)) from e

        return MemoryExtractionResult(
            extracted=int(data.get("extracted", 0) or 0),
            saved=int(data.get("saved", 0) or 0),
            merged=int(data.get("merged", 0) or 0),
            memories=[
                ExtractedMemory(content=m.get("content", ""), tag=m.get("tag", ""))
                for m in data.get("memories") or []
                if isinstance(m, dict)
            ],
        )

    # ── Bookkeeping ─────────────────────────────────────────────────

    async def record_call_end(self, call_record_id: str, duration_seconds: int) -> None:
        await self._post(
            self._cfg.call_record_path,
            {"action": "end", "callRecordId": call_record_id, "durationSeconds": duration_seconds},
        )

    async def award(self, event: str, payload: Dict[str, Any]) -> None:
        await self._post(self._cfg.rewards_path, {"event": event, **payload})
