"""
NudgeCoach — FastAPI Server

================================================================================
Architecture:
  • One SessionLifecycleController per WebSocket, created via SessionRegistry
  • The controller owns the local camera/microphone (LocalMediaDevices) and
    a Gemini Live conversation opened with an ephemeral backend token
  • State snapshots (connecting / active / error / time remaining / tone)
    stream to the presentation layer every second and on every change
================================================================================

Endpoints:
  WS  /ws/session           — session control + snapshot stream
  GET /health               — server health
  GET /sessions             — active sessions with snapshot + latency
  GET /session/{session_id} — single session detail

Client → Server messages:
  { type: "start_session", task: "...", user_id, user_name, task_id,
    duration_seconds, preferred_languages, custom_instruction }
  { type: "end_session" }                    → end (memory saved)
  { type: "complete_task" }                  → finish with completion
  { type: "send_message", text: "..." }      → typed chat
  { type: "action_started" }                 → user started the task
  { type: "acceptance" }                     → user accepted a nudge
  { type: "ping" }                           → keepalive

Server → Client messages:
  { type: "snapshot", data: {...} }          → SessionSnapshot
  { type: "message", data: {...} }           → conversation message
  { type: "session_started", data: {...} }   → ack
  { type: "session_completed", data: {...} } → SessionCompletion
  { type: "session_ended", data: {...} }     → ack
  { type: "pong" }                           → keepalive ack
  { type: "error", message: "..." }          → error
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .core.config import backend_cfg, server_cfg
from .core.errors import CoachSessionError
from .core.models import StartSessionOptions
from .media.devices import LocalMediaDevices
from .services.backend import BackendClient
from .services.lifecycle import SessionLifecycleController
from .services.memory import MemoryGateway
from .services.registry import SessionRegistry
from .transport.gemini_live import GeminiLiveConnection

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("nudgecoach.server")
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)

# ---------------------------------------------------------------------------
# Controller factory + registry
# ---------------------------------------------------------------------------

_backend: Optional[BackendClient] = None


def _get_backend() -> BackendClient:
    global _backend
    if _backend is None:
        _backend = BackendClient()
    return _backend


def build_controller(session_id: str, **callbacks: Any) -> SessionLifecycleController:
    backend = _get_backend()
    devices = LocalMediaDevices(session_id=session_id)
    connection = GeminiLiveConnection(session_id=session_id, on_audio=devices.play)
    return SessionLifecycleController(
        session_id=session_id,
        connection=connection,
        devices=devices,
        backend=backend,
        memory=MemoryGateway(backend, session_id=session_id),
        rewards=backend,
        call_recorder=backend,
        **callbacks,
    )


registry = SessionRegistry(build_controller)

# ---------------------------------------------------------------------------
# FastAPI Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("NudgeCoach backend starting...")
    logger.info(f"   Backend credentials configured: {backend_cfg.has_credentials}")
    yield
    logger.info("Shutting down — ending all sessions...")
    await registry.stop_all()
    if _backend is not None:
        await _backend.aclose()
    logger.info("NudgeCoach backend stopped")


# ---------------------------------------------------------------------------
# FastAPI App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="NudgeCoach — Timed AI Coaching Sessions",
    version="1.0.0",
    description=(
        "Runs a timed voice/video coaching session against Gemini Live and "
        "adapts the coach's tone as the user pushes back."
    ),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(server_cfg.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# REST Endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
async def health():
    return {
        "status": "ok",
        "version": "1.0.0",
        "backend_configured": backend_cfg.has_credentials,
        "active_sessions": registry.active_count,
    }


def _session_detail(controller: SessionLifecycleController) -> Dict[str, Any]:
    return {
        "snapshot": controller.snapshot().to_dict(),
        "tone": controller.tone.state.to_dict(),
        "latency": controller.latency.summary(),
    }


@app.get("/sessions")
async def list_sessions():
    return {
        "active_count": registry.active_count,
        "sessions": {sid: _session_detail(c) for sid, c in registry.all_sessions.items()},
    }


@app.get("/session/{session_id}")
async def session_detail(session_id: str):
    controller = registry.get(session_id)
    if controller is None:
        return {"error": "session not found"}
    return {"session_id": session_id, **_session_detail(controller)}


# ---------------------------------------------------------------------------
# WebSocket: Session control + snapshot stream
# ---------------------------------------------------------------------------

def _options_from(message: Dict[str, Any]) -> StartSessionOptions:
    duration = message.get("duration_seconds")
    return StartSessionOptions(
        user_id=message.get("user_id"),
        user_name=message.get("user_name"),
        task_id=message.get("task_id"),
        duration_seconds=int(duration) if duration else None,
        preferred_languages=list(message.get("preferred_languages") or []),
        custom_instruction=message.get("custom_instruction"),
        chat_mode=message.get("chat_mode", "coach"),
        voice=message.get("voice"),
        call_record_id=message.get("call_record_id"),
    )


@app.websocket("/ws/session")
async def websocket_session(ws: WebSocket):
    """
    WebSocket endpoint — one SessionLifecycleController per connection.
    The controller is stopped (memory saved) when the socket closes.
    """
    await ws.accept()

    session_id = uuid.uuid4().hex[:12]
    start_task: Optional[asyncio.Task] = None

    # Helper to send JSON safely
    async def send(data: Dict[str, Any]) -> None:
        try:
            await ws.send_text(json.dumps(data))
        except Exception as e:
            logger.debug(f"[{session_id}] Send dropped: {e}")

    async def on_state_change(snapshot: Any) -> None:
        await send({"type": "snapshot", "data": snapshot.to_dict()})

    async def on_message(msg: Any) -> None:
        await send({"type": "message", "data": msg.to_dict()})

    async def on_completion(completion: Any) -> None:
        await send({"type": "session_completed", "data": completion.to_dict()})

    controller = registry.create(
        session_id,
        on_state_change=on_state_change,
        on_message=on_message,
        on_completion=on_completion,
    )

    async def snapshot_loop() -> None:
        while True:
            await asyncio.sleep(server_cfg.snapshot_interval)
            if controller.is_active or controller.is_connecting:
                await send({"type": "snapshot", "data": controller.snapshot().to_dict()})

    snapshots = asyncio.create_task(snapshot_loop(), name=f"snapshots-{session_id}")

    async def _start(task: str, options: StartSessionOptions) -> None:
        try:
            started = await controller.start_session(task, options)
            if started:
                await send({"type": "session_started", "data": controller.snapshot().to_dict()})
        except CoachSessionError as e:
            await send({"type": "error", "message": f"Session start failed: {str(e)[:200]}"})
        except Exception as e:
            logger.error(f"[{session_id}] Unexpected start failure: {e}", exc_info=True)
            await send({"type": "error", "message": "Session start failed"})

    try:
        while True:
            raw = await ws.receive_text()

            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                continue

            msg_type = message.get("type", "")

            # ── Start session ──
            if msg_type == "start_session":
                task = str(message.get("task", "")).strip()
                if not task:
                    await send({"type": "error", "message": "Task description required"})
                    continue
                if start_task and not start_task.done():
                    await send({"type": "error", "message": "Session start already in progress"})
                    continue
                start_task = asyncio.create_task(_start(task, _options_from(message)))

            # ── End session ──
            elif msg_type == "end_session":
                await controller.end_session()
                await send({"type": "session_ended", "data": controller.snapshot().to_dict()})

            elif msg_type == "complete_task":
                if not await controller.complete_task():
                    await send({"type": "error", "message": "No active session"})

            # ── Chat ──
            elif msg_type == "send_message":
                text = str(message.get("text", "")).strip()
                if not text:
                    continue
                if not await controller.send_text(text):
                    await send({"type": "error", "message": "No active session"})

            # ── Tone signals from the UI ──
            elif msg_type == "action_started":
                await controller.report_action_started()

            elif msg_type == "acceptance":
                await controller.report_acceptance()

            # ── Keepalive ──
            elif msg_type == "ping":
                await send({"type": "pong"})

    except WebSocketDisconnect:
        logger.info(f"[{session_id}] WebSocket disconnected")
    except Exception as e:
        logger.error(f"[{session_id}] WebSocket error: {e}", exc_info=True)
    finally:
        snapshots.cancel()
        if start_task and not start_task.done():
            controller.force_terminate(reason="socket closed")
            start_task.cancel()
            try:
                await start_task
            except (asyncio.CancelledError, Exception):
                pass
        await registry.stop(session_id)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "nudgecoach.server:app",
        host=server_cfg.host,
        port=server_cfg.port,
        log_level="info",
    )
