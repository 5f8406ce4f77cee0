"""
NudgeCoach — Gemini Live Transport

StreamingConnection over the Gemini Live API (google-genai).

A receive task translates server messages into typed connection events
on an asyncio.Queue:

  input_transcription   → TranscriptFragment(user)
  output_transcription  → TranscriptFragment(assistant)
  turn_complete         → TurnComplete
  interrupted           → Interrupted
  reportUserState call  → UserStateReport (acknowledged immediately)
  stream end / error    → ConnectionClosed

Model audio is handed to ``on_audio`` (the speaker) as raw PCM16 24 kHz.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Optional

from google import genai
from google.genai import types

from ..core.config import RealtimeConfig, realtime_cfg
from ..core.models import (
    ConnectionClosed,
    ConnectionCredential,
    ConnectionEvent,
    Interrupted,
    Role,
    TranscriptFragment,
    TurnComplete,
    UserState,
    UserStateReport,
)

logger = logging.getLogger("nudgecoach.transport")

REPORT_USER_STATE = "reportUserState"

TOOLS = [
    types.Tool(
        function_declarations=[
            types.FunctionDeclaration(
                name=REPORT_USER_STATE,
                description=(
                    "Report how the user is responding to the current nudge. "
                    "Call once per user turn."
                ),
                parameters=types.Schema(
                    type="OBJECT",
                    properties={
                        "state": types.Schema(
                            type="STRING",
                            description="One of: resisting, cooperating, neutral",
                        ),
                        "reason": types.Schema(type="STRING", description="Short reason"),
                    },
                    required=["state"],
                ),
            ),
        ]
    )
]


def build_live_config(system_instruction: str, voice: str) -> types.LiveConnectConfig:
    return types.LiveConnectConfig(
        response_modalities=["AUDIO"],
        system_instruction=types.Content(parts=[types.Part(text=system_instruction)]),
        tools=TOOLS,
        input_audio_transcription=types.AudioTranscriptionConfig(),
        output_audio_transcription=types.AudioTranscriptionConfig(),
        speech_config=types.SpeechConfig(
            voice_config=types.VoiceConfig(
                prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=voice),
            ),
        ),
    )


def parse_user_state(args: Optional[dict]) -> UserStateReport:
    args = args or {}
    raw = str(args.get("state", "neutral")).strip().lower()
    try:
        state = UserState(raw)
    except ValueError:
        state = UserState.NEUTRAL
    return UserStateReport(state=state, reason=str(args.get("reason", "")))


class GeminiLiveConnection:

    def __init__(
        self,
        session_id: str = "",
        config: RealtimeConfig = realtime_cfg,
        on_audio: Optional[Callable[[bytes], None]] = None,
    ) -> None:
        self.session_id = session_id
        self._cfg = config
        self._on_audio = on_audio
        self._client: Optional[genai.Client] = None
        self._connect_cm: Any = None
        self._session: Any = None
        self._receive_task: Optional[asyncio.Task] = None
        self._events: "asyncio.Queue[ConnectionEvent]" = asyncio.Queue()

    @property
    def is_connected(self) -> bool:
        return self._session is not None

    async def connect(
        self,
        system_instruction: str,
        credential: ConnectionCredential,
        voice: Optional[str] = None,
    ) -> None:
        if self._session is not None:
            raise RuntimeError("Gemini Live session already open")

        self._events = asyncio.Queue()
        self._client = genai.Client(
            api_key=credential.token,
            http_options={"api_version": self._cfg.api_version},
        )
        self._connect_cm = self._client.aio.live.connect(
            model=self._cfg.model,
            config=build_live_config(system_instruction, voice or self._cfg.voice),
        )
        self._session = await self._connect_cm.__aenter__()
        self._receive_task = asyncio.create_task(self._receive_loop(), name=f"live-rx-{self.session_id}")
        logger.info(f"[{self.session_id}] Gemini Live connected ({self._cfg.model})")

    async def disconnect(self) -> None:
        self._session = None
        connect_cm, self._connect_cm = self._connect_cm, None
        task, self._receive_task = self._receive_task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, Exception):
                pass
        # Exit the context even when the stream already ended on its own
        if connect_cm is not None:
            try:
                await connect_cm.__aexit__(None, None, None)
            except Exception as e:
                logger.debug(f"[{self.session_id}] Live close error: {e}")
            logger.info(f"[{self.session_id}] Gemini Live disconnected")
        self._events.put_nowait(ConnectionClosed(reason="disconnected"))

    async def send_text(self, text: str) -> None:
        if self._session is None:
            return
        await self._session.send_realtime_input(text=text)

    async def send_audio(self, pcm: bytes) -> None:
        if self._session is None:
            return
        await self._session.send_realtime_input(
            audio=types.Blob(data=pcm, mime_type=self._cfg.input_mime_type)
        )

    async def send_video(self, jpeg: bytes) -> None:
        if self._session is None:
            return
        await self._session.send_realtime_input(
            video=types.Blob(data=jpeg, mime_type="image/jpeg")
        )

    async def events(self) -> AsyncIterator[ConnectionEvent]:
        while True:
            event = await self._events.get()
            yield event
            if isinstance(event, ConnectionClosed):
                return

    # ── Receive ─────────────────────────────────────────────────────

    async def _receive_loop(self) -> None:
        reason = "stream ended"
        try:
            # receive() yields one model turn, then returns; loop for the next
            while self._session is not None:
                async for response in self._session.receive():
                    await self._dispatch(response)
        except asyncio.CancelledError:
            return
        except Exception as e:
            reason = f"stream error: {e}"
            logger.warning(f"[{self.session_id}] Gemini Live receive failed: {e}")
        self._session = None
        self._events.put_nowait(ConnectionClosed(reason=reason))

    async def _dispatch(self, response: Any) -> None:
        server = response.server_content
        if server:
            if server.input_transcription and server.input_transcription.text:
                self._events.put_nowait(TranscriptFragment(Role.USER, server.input_transcription.text))
            if server.output_transcription and server.output_transcription.text:
                self._events.put_nowait(TranscriptFragment(Role.ASSISTANT, server.output_transcription.text))
            if server.model_turn and self._on_audio:
                for part in server.model_turn.parts or []:
                    if part.inline_data and isinstance(part.inline_data.data, bytes):
                        self._on_audio(part.inline_data.data)
            if server.interrupted:
                self._events.put_nowait(Interrupted())
            if server.turn_complete:
                self._events.put_nowait(TurnComplete())

        if response.tool_call:
            responses = []
            for fc in response.tool_call.function_calls or []:
                if fc.name == REPORT_USER_STATE:
                    self._events.put_nowait(parse_user_state(fc.args))
                responses.append(
                    types.FunctionResponse(id=fc.id, name=fc.name, response={"status": "ok"})
                )
            if responses and self._session is not None:
                await self._session.send_tool_response(function_responses=responses)
