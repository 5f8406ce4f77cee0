"""
NudgeCoach — Session Lifecycle Controller

================================================================================
ONE COACHING SESSION, START TO FINISH
================================================================================

The controller is the only owner of the camera, the microphone and the
streaming connection. It composes the transcript aggregator, the tone
state machine and the virtual message scheduler, and is the single
outbound channel to the model.

  start_session:
    1. tear down a still-live prior session (+ short grace)
    2. camera (bounded retries) ║ microphone ║ system instruction ║ credential
       — all racing ONE shared timeout; first hard failure cancels the rest
    3. open the connection (same timeout)
    4. ACTIVE: countdown, event pump, scheduler, "observing" until first turn

  termination (explicit end, countdown zero, forced logout, remote close)
    all funnel into cleanup(), which is idempotent: a synchronous guard
    rejects concurrent re-entry, and is lowered shortly after completion so
    a later legitimate cleanup still runs.

  Every start captures an epoch; cleanup bumps it, so a start that was
  overtaken by a cleanup notices on its next checkpoint and backs out.
================================================================================
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Set, Tuple

from ..core.clock import Clock, RealClock
from ..core.config import (
    SchedulerConfig,
    SessionConfig,
    ToneConfig,
    scheduler_cfg,
    session_cfg,
    tone_cfg,
)
from ..core.errors import (
    CoachSessionError,
    ConnectionTimeout,
    PermissionDenied,
    SessionStartError,
)
from ..core.interfaces import CallRecorder, MediaDevices, RewardSink, SessionBackend, StreamingConnection
from ..core.latency import LatencyTracer
from ..core.models import (
    ConnectionClosed,
    ConnectionCredential,
    ConnectionEvent,
    Interrupted,
    Message,
    ResistanceSignal,
    Role,
    SessionCompletion,
    SessionSnapshot,
    StartSessionOptions,
    SystemInstructionPayload,
    SystemInstructionRequest,
    TranscriptFragment,
    TurnComplete,
    UserState,
    UserStateReport,
)
from ..core.state_machine import SessionMode, SessionState, SessionStateMachine
from ..processing.tone import ToneStateMachine
from ..processing.transcript import ConversationHistory, TranscriptAggregator, TurnMarker
from ..processing.virtual_messages import VirtualMessageScheduler
from .countdown import CountdownTimer
from .memory import MemoryGateway

logger = logging.getLogger("nudgecoach.lifecycle")

_LIVE_STATES = (SessionState.CONNECTING, SessionState.ACTIVE, SessionState.FINALIZING)


class SessionLifecycleController:
    """
    Explicit session handle.

    Callbacks may be plain functions or coroutines:
      on_completion(SessionCompletion) — task-management layer
      on_message(Message)              — presentation layer (history)
      on_state_change(SessionSnapshot) — presentation layer (snapshots)
    """

    def __init__(
        self,
        session_id: str,
        connection: StreamingConnection,
        devices: MediaDevices,
        backend: SessionBackend,
        memory: Optional[MemoryGateway] = None,
        rewards: Optional[RewardSink] = None,
        call_recorder: Optional[CallRecorder] = None,
        on_completion: Optional[Callable[[SessionCompletion], Any]] = None,
        on_message: Optional[Callable[[Message], Any]] = None,
        on_state_change: Optional[Callable[[SessionSnapshot], Any]] = None,
        config: SessionConfig = session_cfg,
        tone_config: ToneConfig = tone_cfg,
        scheduler_config: SchedulerConfig = scheduler_cfg,
        clock: Optional[Clock] = None,
    ) -> None:
        self.session_id = session_id
        self._connection = connection
        self._devices = devices
        self._backend = backend
        self._memory = memory
        self._rewards = rewards
        self._call_recorder = call_recorder
        self._on_completion = on_completion
        self._on_message = on_message
        self._on_state_change = on_state_change
        self._cfg = config
        self._clock = clock or RealClock()

        self._sm = SessionStateMachine(session_id=session_id)
        self._history = ConversationHistory()
        self._transcript = TranscriptAggregator(self._history, session_id=session_id)
        self._tone = ToneStateMachine(session_id=session_id, config=tone_config, clock=self._clock)
        self._scheduler = VirtualMessageScheduler(
            send=self._send_outbound,
            record=self._record_virtual,
            session_id=session_id,
            config=scheduler_config,
            clock=self._clock,
        )
        self._countdown = CountdownTimer(
            on_zero=self._on_countdown_zero,
            session_id=session_id,
            tick_interval=config.tick_interval,
        )
        self._tracer = LatencyTracer(session_id)

        # ── Session record ──
        self._task_description = ""
        self._options = StartSessionOptions()
        self._started_at: Optional[float] = None
        self._last_error: Optional[str] = None
        self._camera_enabled = False
        self._observing = False

        # ── Coordination ──
        self._epoch = 0
        self._starting = False
        self._cleanup_in_progress = False
        self._cleanup_done: Optional[asyncio.Event] = None
        self._media_held = False
        self._connection_open = False
        self._finishing = False
        self._memory_started = False
        self._pump_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._sm.state

    @property
    def mode(self) -> SessionMode:
        return self._sm.mode

    @property
    def is_active(self) -> bool:
        return self._sm.state in (SessionState.ACTIVE, SessionState.FINALIZING)

    @property
    def is_connecting(self) -> bool:
        return self._sm.state == SessionState.CONNECTING

    @property
    def camera_enabled(self) -> bool:
        return self._camera_enabled

    @property
    def observing(self) -> bool:
        return self._observing

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def time_remaining(self) -> int:
        return self._countdown.remaining

    @property
    def history(self) -> ConversationHistory:
        return self._history

    @property
    def tone(self) -> ToneStateMachine:
        return self._tone

    @property
    def scheduler(self) -> VirtualMessageScheduler:
        return self._scheduler

    @property
    def countdown(self) -> CountdownTimer:
        return self._countdown

    @property
    def latency(self) -> LatencyTracer:
        return self._tracer

    @property
    def cleanup_in_progress(self) -> bool:
        return self._cleanup_in_progress

    def snapshot(self) -> SessionSnapshot:
        state = self._sm.state
        return SessionSnapshot(
            session_id=self.session_id,
            state=state.value,
            mode=self._sm.mode.value,
            connecting=state == SessionState.CONNECTING,
            active=state in (SessionState.ACTIVE, SessionState.FINALIZING),
            observing=self._observing,
            error=self._last_error,
            time_remaining=self._countdown.remaining,
            tone=self._tone.current_tone.value,
            tone_description=self._tone.description,
            camera_enabled=self._camera_enabled,
            message_count=len(self._history),
        )

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start_session(
        self,
        task_description: str,
        options: Optional[StartSessionOptions] = None,
    ) -> bool:
        """
        Returns True once ACTIVE, False if a start is already in flight or
        this start was overtaken by a cleanup. Raises a CoachSessionError
        after releasing everything it acquired.
        """
        if self._starting:
            logger.warning(f"[{self.session_id}] start_session ignored: start already in flight")
            return False

        self._starting = True
        try:
            return await self._start(task_description, options or StartSessionOptions())
        finally:
            self._starting = False

    async def _start(self, task_description: str, options: StartSessionOptions) -> bool:
        # A new session may not begin until the previous cleanup has finished
        if self._cleanup_done is not None and not self._cleanup_done.is_set():
            await self._cleanup_done.wait()

        if self._sm.state in _LIVE_STATES or self._connection_open:
            logger.info(f"[{self.session_id}] Tearing down prior session before start")
            await self.cleanup(reason="restart")
            await asyncio.sleep(self._cfg.prior_session_grace)

        # Previous cleanup is complete; lower its guard for this session
        if self._cleanup_done is None or self._cleanup_done.is_set():
            self._cleanup_in_progress = False

        epoch = self._epoch
        self._begin_record(task_description, options)
        self._sm.transition(SessionState.CONNECTING, reason="start_session")
        self._tracer.mark("start_requested")
        self._notify_state()

        try:
            payload, credential = await self._acquire_all(task_description, options)
            if epoch != self._epoch:
                return self._abandon_stale(epoch, "after acquisition")

            self._connection_open = True
            try:
                await asyncio.wait_for(
                    self._connection.connect(payload.system_instruction, credential, options.voice),
                    timeout=self._cfg.connection_timeout,
                )
            except asyncio.TimeoutError as e:
                raise ConnectionTimeout("connect", self._cfg.connection_timeout) from e

            if epoch != self._epoch:
                await self._disconnect()
                return self._abandon_stale(epoch, "after connect")

        except Exception as e:
            if epoch != self._epoch:
                logger.info(f"[{self.session_id}] Stale start failed quietly: {e}")
                self._release_media(force=True)
                return False

            error = self._classify(e)
            self._last_error = str(error)
            logger.error(f"[{self.session_id}] Session start failed: {error}")
            await self.cleanup(reason="start_failed")
            if error is e:
                raise
            raise error from e

        self._tracer.mark("connected")
        self._sm.transition(SessionState.ACTIVE, reason="connected")
        self._started_at = self._clock.now()
        self._observing = True
        self._countdown.start(options.duration_seconds or self._cfg.countdown_seconds)
        self._pump_task = asyncio.create_task(self._pump_events(epoch), name=f"pump-{self.session_id}")
        self._scheduler.start(self._started_at)

        logger.info(
            f"[{self.session_id}] Session active "
            f"(mode={self._sm.mode.value}, {self._countdown.remaining}s)"
        )
        self._notify_state()
        return True

    def _begin_record(self, task_description: str, options: StartSessionOptions) -> None:
        self._task_description = task_description
        self._options = options
        self._started_at = None
        self._last_error = None
        self._camera_enabled = False
        self._observing = False
        self._finishing = False
        self._memory_started = False
        self._tone.reset()
        self._transcript.reset()
        self._countdown.reset(options.duration_seconds or self._cfg.countdown_seconds)
        self._tracer.reset()

    def _abandon_stale(self, epoch: int, where: str) -> bool:
        logger.info(f"[{self.session_id}] Start superseded by cleanup {where} (epoch {epoch} → {self._epoch})")
        # Devices may have come up after the cleanup released them
        self._release_media(force=True)
        self._sm.set_mode(SessionMode.UNAVAILABLE)
        return False

    async def _acquire_all(
        self,
        task_description: str,
        options: StartSessionOptions,
    ) -> Tuple[SystemInstructionPayload, ConnectionCredential]:
        self._media_held = True
        camera = asyncio.create_task(self._acquire_camera(), name=f"camera-{self.session_id}")
        microphone = asyncio.create_task(
            self._devices.acquire_microphone(self._forward_audio, self._on_user_speech),
            name=f"microphone-{self.session_id}",
        )
        instruction = asyncio.create_task(
            self._fetch_instruction(task_description, options), name=f"instruction-{self.session_id}"
        )
        credential = asyncio.create_task(self._backend.fetch_credential(), name=f"credential-{self.session_id}")
        tasks = [camera, microphone, instruction, credential]

        try:
            done, pending = await asyncio.wait(
                tasks,
                timeout=self._cfg.connection_timeout,
                return_when=asyncio.FIRST_EXCEPTION,
            )
            for task in tasks:
                if task in done and task.exception() is not None:
                    raise task.exception()
            if pending:
                raise ConnectionTimeout("session start", self._cfg.connection_timeout)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        self._camera_enabled = camera.result()
        self._sm.set_mode(SessionMode.MULTIMODAL if self._camera_enabled else SessionMode.AUDIO_ONLY)
        self._tracer.mark("media_ready")
        return instruction.result(), credential.result()

    async def _acquire_camera(self) -> bool:
        """Camera is optional: denial or exhausted retries degrade to audio-only."""
        attempts = self._cfg.camera_max_attempts
        for attempt in range(1, attempts + 1):
            try:
                await self._devices.acquire_camera(self._forward_video)
                logger.info(f"[{self.session_id}] Camera ready (attempt {attempt})")
                return True
            except PermissionDenied as e:
                logger.warning(f"[{self.session_id}] Camera permission denied, continuing audio-only: {e}")
                return False
            except Exception as e:
                logger.warning(f"[{self.session_id}] Camera attempt {attempt}/{attempts} failed: {e}")
                if attempt < attempts:
                    await asyncio.sleep(self._cfg.camera_retry_delay)
        logger.warning(f"[{self.session_id}] Camera unavailable, continuing audio-only")
        return False

    async def _fetch_instruction(
        self,
        task_description: str,
        options: StartSessionOptions,
    ) -> SystemInstructionPayload:
        if options.custom_instruction:
            return SystemInstructionPayload(system_instruction=options.custom_instruction)

        wall = self._clock.wall()
        request = SystemInstructionRequest(
            task_description=task_description,
            user_name=options.user_name,
            preferred_languages=list(options.preferred_languages),
            user_id=options.user_id,
            chat_mode=options.chat_mode,
            local_time=f"{wall.hour}:{wall.minute:02d} (24-hour format)",
            local_date=f"{wall:%A, %B} {wall.day}",
            local_date_iso=wall.date().isoformat(),
            is_reconnect=options.is_reconnect,
            context=options.context,
        )
        payload = await self._backend.fetch_system_instruction(request)
        self._tracer.mark("config_fetched")
        return payload

    @staticmethod
    def _classify(error: Exception) -> CoachSessionError:
        if isinstance(error, CoachSessionError):
            return error
        if isinstance(error, asyncio.TimeoutError):
            return ConnectionTimeout("session start", 0)
        return SessionStartError(str(error) or type(error).__name__)

    # ------------------------------------------------------------------
    # Media forwarding (devices never touch the connection directly)
    # ------------------------------------------------------------------

    def _accepting_media(self) -> bool:
        return self._sm.state == SessionState.ACTIVE and self._connection.is_connected

    async def _forward_audio(self, pcm: bytes) -> None:
        if not self._accepting_media():
            return
        try:
            await self._connection.send_audio(pcm)
        except Exception as e:
            logger.debug(f"[{self.session_id}] Audio forward failed: {e}")

    async def _forward_video(self, jpeg: bytes) -> None:
        if not self._accepting_media():
            return
        try:
            await self._connection.send_video(jpeg)
        except Exception as e:
            logger.debug(f"[{self.session_id}] Video forward failed: {e}")

    def _on_user_speech(self, speaking: bool) -> None:
        self._scheduler.set_user_speaking(speaking)

    # ------------------------------------------------------------------
    # Outbound channel
    # ------------------------------------------------------------------

    async def _send_outbound(self, text: str) -> bool:
        if not self._accepting_media():
            logger.debug(f"[{self.session_id}] Outbound dropped (not active): {text[:60]}")
            return False
        try:
            await self._connection.send_text(text)
            return True
        except Exception as e:
            logger.warning(f"[{self.session_id}] Outbound send failed: {e}")
            return False

    def _record_virtual(self, token: str) -> None:
        msg = self._history.append(Role.USER, token, is_virtual=True)
        self._emit(self._on_message, msg)

    async def send_text(self, text: str) -> bool:
        """Typed chat input from the user."""
        text = text.strip()
        if not text or not self.is_active:
            return False
        for msg in self._transcript.record_typed_message(text):
            self._emit(self._on_message, msg)
        self._scheduler.record_user_utterance()
        return await self._send_outbound(text)

    # ------------------------------------------------------------------
    # Tone entry points
    # ------------------------------------------------------------------

    async def report_resistance(self, signal: ResistanceSignal) -> Optional[str]:
        instruction = self._tone.record_resistance(signal)
        if instruction:
            await self._send_outbound(instruction)
            self._notify_state()
        return instruction

    async def report_acceptance(self) -> None:
        self._tone.record_acceptance()
        self._notify_state()

    async def report_action_started(self) -> Optional[str]:
        instruction = self._tone.record_action_started()
        if instruction:
            await self._send_outbound(instruction)
            self._notify_state()
        return instruction

    async def celebrate_completion(self) -> str:
        """User says the task is done but stays on the call."""
        instruction = self._tone.generate_completion_celebration()
        await self._send_outbound(instruction)
        return instruction

    async def _apply_marker(self, marker: TurnMarker) -> None:
        if marker == TurnMarker.RESIST:
            await self.report_resistance(ResistanceSignal.AI_DETECTED)
        elif marker == TurnMarker.RESIST_EMOTIONAL:
            await self.report_resistance(ResistanceSignal.AI_DETECTED_EMOTIONAL)
        elif marker == TurnMarker.ACCEPT:
            await self.report_acceptance()
        elif marker == TurnMarker.ACTION_STARTED:
            await self.report_action_started()

    # ------------------------------------------------------------------
    # Event pump
    # ------------------------------------------------------------------

    async def _pump_events(self, epoch: int) -> None:
        try:
            async for event in self._connection.events():
                if epoch != self._epoch:
                    break
                try:
                    await self._handle_event(event)
                except Exception as e:
                    logger.error(f"[{self.session_id}] Event handling error: {e}", exc_info=True)
                if isinstance(event, ConnectionClosed):
                    break
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"[{self.session_id}] Event stream failed: {e}")
            if epoch == self._epoch:
                self._last_error = f"Connection lost: {e}"
                self._spawn(self.cleanup(reason="stream_error"))

    async def _handle_event(self, event: ConnectionEvent) -> None:
        if isinstance(event, TranscriptFragment):
            update = self._transcript.ingest(event)
            if not update.accepted:
                return
            if event.role == Role.USER:
                self._scheduler.record_user_utterance()
                return
            if update.flushed_user:
                self._emit(self._on_message, update.flushed_user)
            if update.new_assistant_turn:
                self._scheduler.set_ai_speaking(True)
                self._tracer.mark("first_assistant_turn")
                if self._observing:
                    self._observing = False
                    self._notify_state()
                if update.marker:
                    await self._apply_marker(update.marker)

        elif isinstance(event, TurnComplete):
            msg = self._transcript.complete_turn()
            if msg:
                self._emit(self._on_message, msg)
            self._scheduler.record_turn_complete(from_virtual=self._scheduler.state.virtual_reply_pending)

        elif isinstance(event, Interrupted):
            self._scheduler.set_ai_speaking(False)

        elif isinstance(event, UserStateReport):
            if event.state == UserState.RESISTING:
                await self.report_resistance(ResistanceSignal.AI_DETECTED)
            elif event.state == UserState.COOPERATING:
                await self.report_acceptance()

        elif isinstance(event, ConnectionClosed):
            if self.is_active and not self._cleanup_in_progress:
                logger.warning(f"[{self.session_id}] Connection closed remotely: {event.reason}")
                self._last_error = event.reason or "Connection closed"
                self._spawn(self.cleanup(reason="remote_close"))

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _on_countdown_zero(self) -> None:
        if self._finishing:
            return
        self._finishing = True
        self._spawn(self._finish(reason="countdown", task_completed=False))

    async def complete_task(self) -> bool:
        """User confirmed the task is done: finish now, with completion."""
        if self._finishing or not self.is_active:
            return False
        self._finishing = True
        await self._finish(reason="task_completed", task_completed=True)
        return True

    async def _finish(self, reason: str, task_completed: bool) -> None:
        """memory save → cleanup → completion callback → reward, once."""
        if self._sm.can_transition(SessionState.FINALIZING):
            self._sm.transition(SessionState.FINALIZING, reason=reason)
            self._notify_state()

        duration = self._elapsed_seconds()
        completion = SessionCompletion(
            task_id=self._options.task_id,
            task_description=self._task_description,
            duration_seconds=duration,
            reason=reason,
            task_completed=task_completed,
            total_rejections_overcome=self._tone.state.total_rejections,
        )

        self._start_memory_save(task_completed)
        await self.cleanup(reason=reason)
        await self._invoke(self._on_completion, completion)

        if self._rewards is not None:
            self._spawn(self._award(completion))

    async def _award(self, completion: SessionCompletion) -> None:
        try:
            await self._rewards.award(f"session_{completion.reason}", {
                "userId": self._options.user_id,
                **completion.to_dict(),
            })
        except Exception as e:
            logger.warning(f"[{self.session_id}] Reward award failed: {e}")

    def _start_memory_save(self, task_completed: bool) -> None:
        """Snapshot history now; the save itself runs in the background."""
        if self._memory is None or self._memory_started:
            return
        self._memory_started = True
        self._transcript.flush_pending()
        request = self._memory.build_request(
            messages=self._history.messages,
            task_description=self._task_description,
            user_id=self._options.user_id,
            duration_seconds=self._elapsed_seconds(),
            task_completed=task_completed,
            task_id=self._options.task_id,
            additional_context=self._options.context,
            now=self._clock.wall(),
        )
        if request is not None:
            self._memory.persist_in_background(request)

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    async def end_session(self, save_memory: bool = True, task_completed: bool = False) -> None:
        if save_memory and self._started_at is not None:
            self._start_memory_save(task_completed)
        await self.cleanup(reason="end_session")

    async def reset_session(self) -> None:
        await self.end_session(save_memory=False)
        self._transcript.reset()
        self._countdown.reset()
        self._tone.reset()
        self._last_error = None
        self._task_description = ""
        self._options = StartSessionOptions()
        if self._sm.can_transition(SessionState.IDLE):
            self._sm.transition(SessionState.IDLE, reason="reset")
        self._notify_state()

    def force_terminate(self, reason: str = "forced") -> Optional[asyncio.Task]:
        """
        Synchronous short-circuit (e.g. logout): invalidates in-flight
        starts, stops the countdown and releases devices immediately, then
        schedules the full cleanup.
        """
        logger.warning(f"[{self.session_id}] Forced termination: {reason}")
        self._epoch += 1
        self._countdown.cancel()
        self._release_media()
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return None
        return self._spawn(self.cleanup(reason=reason))

    async def cleanup(self, reason: str = "cleanup") -> None:
        self._epoch += 1

        if self._cleanup_in_progress:
            # Re-entry: wait for the running cleanup instead of duplicating it
            if self._cleanup_done is not None:
                await self._cleanup_done.wait()
            return

        self._cleanup_in_progress = True
        done = asyncio.Event()
        self._cleanup_done = done
        try:
            await self._teardown(reason)
        finally:
            done.set()
            asyncio.get_running_loop().call_later(
                self._cfg.cleanup_guard_reset, self._lower_cleanup_guard, done
            )

    def _lower_cleanup_guard(self, done: asyncio.Event) -> None:
        if self._cleanup_done is done:
            self._cleanup_in_progress = False

    async def _teardown(self, reason: str) -> None:
        logger.info(f"[{self.session_id}] Cleanup ({reason})")
        duration = self._elapsed_seconds()

        self._countdown.cancel()
        await self._scheduler.stop()
        await self._stop_pump()
        await self._disconnect()
        self._release_media()

        if self._call_recorder is not None and self._options.call_record_id and self._started_at is not None:
            self._spawn(self._record_call_end(self._options.call_record_id, duration))

        self._observing = False
        self._camera_enabled = False
        self._started_at = None
        self._sm.set_mode(SessionMode.UNAVAILABLE)
        if self._sm.can_transition(SessionState.ENDED):
            self._sm.transition(SessionState.ENDED, reason=reason)
        self._notify_state()

    async def _stop_pump(self) -> None:
        task, self._pump_task = self._pump_task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, Exception):
            pass

    async def _disconnect(self) -> None:
        if not self._connection_open:
            return
        self._connection_open = False
        try:
            await self._connection.disconnect()
        except Exception as e:
            logger.warning(f"[{self.session_id}] Disconnect error: {e}")

    def _release_media(self, force: bool = False) -> None:
        if not self._media_held and not force:
            return
        self._media_held = False
        self._camera_enabled = False
        try:
            self._devices.release()
        except Exception as e:
            logger.warning(f"[{self.session_id}] Device release error: {e}")

    async def _record_call_end(self, call_record_id: str, duration: int) -> None:
        try:
            await self._call_recorder.record_call_end(call_record_id, duration)
        except Exception as e:
            logger.warning(f"[{self.session_id}] Call record update failed: {e}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _elapsed_seconds(self) -> int:
        if self._started_at is None:
            return 0
        return max(0, int(self._clock.now() - self._started_at))

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _emit(self, callback: Optional[Callable], arg: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(arg)
        except Exception as e:
            logger.error(f"[{self.session_id}] Callback error: {e}")
            return
        if asyncio.iscoroutine(result):
            self._spawn(result)

    async def _invoke(self, callback: Optional[Callable], arg: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(arg)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.error(f"[{self.session_id}] Callback error: {e}", exc_info=True)

    def _notify_state(self) -> None:
        self._emit(self._on_state_change, self.snapshot())

    async def drain(self) -> None:
        """Wait for background work (rewards, call records, memory)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        if self._memory is not None:
            await self._memory.drain()
