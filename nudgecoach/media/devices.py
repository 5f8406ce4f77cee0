"""
NudgeCoach — Local Media Devices

MediaDevices backed by the host's camera (OpenCV) and microphone/speaker
(sounddevice / PortAudio).

  camera      → VideoCapture opened off-loop; a frame pump JPEG-encodes at
                media_cfg.video_fps and hands frames to the controller
  microphone  → RawInputStream int16 @ 16 kHz; the PortAudio thread hops
                chunks onto the loop, where the VAD runs before forwarding
  speaker     → RawOutputStream int16 @ 24 kHz for model audio

release() is synchronous and idempotent so forced termination can call
it from anywhere.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Optional

import cv2
import numpy as np

from ..core.config import MediaConfig, VADConfig, media_cfg, vad_cfg
from ..core.errors import PermissionDenied, TransientDeviceError
from ..core.interfaces import AudioSink, FrameSink, SpeechStateSink
from ..processing.vad import VoiceActivityDetector

logger = logging.getLogger("nudgecoach.media")

_PERMISSION_HINTS = ("permission", "not authorized", "not permitted", "denied", "notallowed")


def _is_permission_error(error: BaseException) -> bool:
    if isinstance(error, PermissionError):
        return True
    text = str(error).lower()
    return any(hint in text for hint in _PERMISSION_HINTS)


def encode_frame(frame: np.ndarray, max_width: int, quality: int) -> Optional[bytes]:
    height, width = frame.shape[:2]
    if width > max_width:
        scale = max_width / float(width)
        frame = cv2.resize(frame, (max_width, int(height * scale)), interpolation=cv2.INTER_AREA)
    ok, buf = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    return buf.tobytes() if ok else None


class LocalMediaDevices:

    def __init__(
        self,
        session_id: str = "",
        config: MediaConfig = media_cfg,
        vad_config: VADConfig = vad_cfg,
    ) -> None:
        self.session_id = session_id
        self._cfg = config
        self._vad_cfg = vad_config
        self._vad = VoiceActivityDetector(config=vad_config)
        self._capture: Any = None
        self._input_stream: Any = None
        self._output_stream: Any = None
        self._frame_task: Optional[asyncio.Task] = None
        self._audio_task: Optional[asyncio.Task] = None
        self._playback = bytearray()
        self._playback_lock = threading.Lock()
        self._speaker_failed = False

    @property
    def camera_enabled(self) -> bool:
        return self._capture is not None

    @property
    def microphone_enabled(self) -> bool:
        return self._input_stream is not None

    @property
    def vad(self) -> VoiceActivityDetector:
        return self._vad

    # ── Camera ──────────────────────────────────────────────────────

    async def acquire_camera(self, on_frame: FrameSink) -> None:
        if self._capture is not None:
            return
        try:
            capture = await asyncio.to_thread(self._open_capture)
        except Exception as e:
            if _is_permission_error(e):
                raise PermissionDenied("camera", str(e)) from e
            raise TransientDeviceError("camera", str(e)) from e

        self._capture = capture
        self._frame_task = asyncio.create_task(self._frame_pump(capture, on_frame), name=f"camera-{self.session_id}")
        logger.info(f"[{self.session_id}] Camera {self._cfg.camera_index} opened")

    def _open_capture(self) -> Any:
        capture = cv2.VideoCapture(self._cfg.camera_index)
        if not capture.isOpened():
            capture.release()
            raise RuntimeError(f"camera {self._cfg.camera_index} could not be opened")
        ok, _ = capture.read()
        if not ok:
            capture.release()
            raise RuntimeError(f"camera {self._cfg.camera_index} returned no frames")
        return capture

    async def _frame_pump(self, capture: Any, on_frame: FrameSink) -> None:
        interval = 1.0 / max(self._cfg.video_fps, 0.1)
        try:
            while self._capture is capture:
                ok, frame = await asyncio.to_thread(capture.read)
                if ok and frame is not None:
                    jpeg = encode_frame(frame, self._cfg.max_frame_width, self._cfg.jpeg_quality)
                    if jpeg:
                        await on_frame(jpeg)
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning(f"[{self.session_id}] Frame pump stopped: {e}")

    # ── Microphone ──────────────────────────────────────────────────

    async def acquire_microphone(self, on_audio: AudioSink, on_speech: Optional[SpeechStateSink] = None) -> None:
        if self._input_stream is not None:
            return
        # PortAudio raises OSError at import when no audio backend exists
        try:
            import sounddevice as sd
        except OSError as e:
            raise TransientDeviceError("microphone", f"audio backend unavailable: {e}") from e

        loop = asyncio.get_running_loop()
        queue: "asyncio.Queue[bytes]" = asyncio.Queue()

        def _callback(indata, frames, time_info, status) -> None:
            if status:
                logger.debug(f"[{self.session_id}] Mic status: {status}")
            loop.call_soon_threadsafe(queue.put_nowait, bytes(indata))

        def _open() -> Any:
            stream = sd.RawInputStream(
                samplerate=self._vad_cfg.sample_rate,
                channels=1,
                dtype="int16",
                blocksize=self._vad_cfg.chunk_samples,
                callback=_callback,
            )
            stream.start()
            return stream

        try:
            self._input_stream = await asyncio.to_thread(_open)
        except Exception as e:
            if _is_permission_error(e):
                raise PermissionDenied("microphone", str(e)) from e
            raise TransientDeviceError("microphone", str(e)) from e

        self._vad.reset()
        self._vad.set_listener(on_speech)
        self._audio_task = asyncio.create_task(self._audio_pump(queue, on_audio), name=f"mic-{self.session_id}")
        logger.info(f"[{self.session_id}] Microphone opened ({self._vad_cfg.sample_rate} Hz)")

    async def _audio_pump(self, queue: "asyncio.Queue[bytes]", on_audio: AudioSink) -> None:
        try:
            while True:
                chunk = await queue.get()
                self._vad.process(chunk)
                await on_audio(chunk)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning(f"[{self.session_id}] Audio pump stopped: {e}")

    # ── Speaker ─────────────────────────────────────────────────────

    def play(self, pcm: bytes) -> None:
        """Model audio sink. Queues PCM for the output callback; never blocks the loop."""
        with self._playback_lock:
            self._playback.extend(pcm)
        if self._output_stream is not None or self._speaker_failed:
            return
        try:
            import sounddevice as sd
            self._output_stream = sd.RawOutputStream(
                samplerate=self._cfg.speaker_sample_rate,
                channels=1,
                dtype="int16",
                callback=self._fill_output,
            )
            self._output_stream.start()
        except Exception as e:
            logger.warning(f"[{self.session_id}] Speaker unavailable: {e}")
            self._output_stream = None
            self._speaker_failed = True
            with self._playback_lock:
                self._playback.clear()

    def _fill_output(self, outdata, frames, time_info, status) -> None:
        # PortAudio thread
        size = len(outdata)
        with self._playback_lock:
            chunk = bytes(self._playback[:size])
            del self._playback[:size]
        outdata[:len(chunk)] = chunk
        if len(chunk) < size:
            outdata[len(chunk):] = b"\x00" * (size - len(chunk))

    # ── Release ─────────────────────────────────────────────────────

    def release(self) -> None:
        for attr in ("_frame_task", "_audio_task"):
            task = getattr(self, attr)
            setattr(self, attr, None)
            if task and not task.done():
                task.cancel()

        capture, self._capture = self._capture, None
        if capture is not None:
            try:
                capture.release()
            except Exception as e:
                logger.debug(f"[{self.session_id}] Camera release error: {e}")
            logger.info(f"[{self.session_id}] Camera released")

        for attr in ("_input_stream", "_output_stream"):
            stream = getattr(self, attr)
            setattr(self, attr, None)
            if stream is not None:
                try:
                    stream.stop()
                    stream.close()
                except Exception as e:
                    logger.debug(f"[{self.session_id}] Audio stream close error: {e}")

        self._vad.set_listener(None)
        self._vad.reset()
        with self._playback_lock:
            self._playback.clear()
