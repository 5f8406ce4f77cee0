from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from nudgecoach.core.config import BackendConfig
from nudgecoach.core.errors import BackendConfigError, MemorySaveFailure
from nudgecoach.core.models import MemoryExtractionRequest, SystemInstructionRequest
from nudgecoach.services.backend import BackendClient


def _instruction_request(task: str = "wash the dishes") -> SystemInstructionRequest:
    return SystemInstructionRequest(
        task_description=task,
        user_name="Sam",
        preferred_languages=[],
        user_id="u1",
        chat_mode="coach",
        local_time="14:05 (24-hour format)",
        local_date="Monday, May 6",
        local_date_iso="2024-05-06",
    )


def _memory_request() -> MemoryExtractionRequest:
    return MemoryExtractionRequest(user_id="u1", task_description="x", messages=[], local_date="2024-05-06")


CFG = BackendConfig(functions_url="https://example.test/functions/v1", anon_key="anon")


def _client(handler) -> BackendClient:
    return BackendClient(config=CFG, access_token="user-jwt", transport=httpx.MockTransport(handler))


def test_fetch_system_instruction() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["apikey"] = request.headers["apikey"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "systemInstruction": "You are a coach.",
            "retrievedMemories": ["likes jazz"],
            "successRecord": {"streak": 2},
        })

    async def _run() -> None:
        client = _client(handler)
        payload = await client.fetch_system_instruction(_instruction_request())
        await client.aclose()

        assert payload.system_instruction == "You are a coach."
        assert payload.retrieved_memories == ["likes jazz"]
        assert payload.success_record == {"streak": 2}

    asyncio.run(_run())

    assert seen["url"] == "https://example.test/functions/v1/get-system-instruction"
    assert seen["auth"] == "Bearer user-jwt"
    assert seen["apikey"] == "anon"
    assert seen["body"]["taskInput"] == "wash the dishes"
    assert seen["body"]["localTime"] == "14:05 (24-hour format)"
    assert "isReconnect" not in seen["body"]


def test_instruction_failures_are_classified() -> None:
    async def _run(handler) -> None:
        client = _client(handler)
        try:
            with pytest.raises(BackendConfigError):
                await client.fetch_system_instruction(_instruction_request("x"))
        finally:
            await client.aclose()

    asyncio.run(_run(lambda request: httpx.Response(500, json={"error": "boom"})))
    asyncio.run(_run(lambda request: httpx.Response(200, json={"retrievedMemories": []})))
    asyncio.run(_run(lambda request: httpx.Response(200, json=["not", "an", "object"])))


def test_fetch_credential_sends_ttl() -> None:
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"token": "ephemeral"})

    async def _run() -> None:
        client = _client(handler)
        credential = await client.fetch_credential()
        await client.aclose()
        assert credential.token == "ephemeral"

    asyncio.run(_run())
    assert bodies == [{"ttl": CFG.token_ttl}]


def test_extract_memories() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/memory-extractor")
        assert json.loads(request.content)["action"] == "extract"
        return httpx.Response(200, json={
            "extracted": 2, "saved": 1, "merged": 1,
            "memories": [{"content": "prefers mornings", "tag": "PREFERENCE"}],
        })

    async def _run() -> None:
        client = _client(handler)
        result = await client.extract_memories(_memory_request())
        await client.aclose()
        assert (result.extracted, result.saved, result.merged) == (2, 1, 1)
        assert result.memories[0].tag == "PREFERENCE"

    asyncio.run(_run())


def test_extract_memories_failure() -> None:
    async def _run() -> None:
        client = _client(lambda request: httpx.Response(503))
        with pytest.raises(MemorySaveFailure):
            await client.extract_memories(_memory_request())
        await client.aclose()

    asyncio.run(_run())


def test_bookkeeping_posts() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.url.path.rsplit("/", 1)[-1], json.loads(request.content)))
        return httpx.Response(200, json={"ok": True})

    async def _run() -> None:
        client = _client(handler)
        await client.record_call_end("call-1", 240)
        await client.award("session_countdown", {"userId": "u1"})
        await client.aclose()

    asyncio.run(_run())
    assert calls == [
        ("call-records", {"action": "end", "callRecordId": "call-1", "durationSeconds": 240}),
        ("award-rewards", {"event": "session_countdown", "userId": "u1"}),
    ]
