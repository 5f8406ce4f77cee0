"""
NudgeCoach — Voice Activity Detection

Energy VAD over int16 PCM chunks. Levels are RMS scaled to 0–100 with
hysteresis: speech starts above ``rise_threshold`` (confirmed only after
``min_speech_duration``) and ends below ``fall_threshold``.

Feeds the "user speaking" flag the virtual message scheduler consults.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

import numpy as np

from ..core.config import VADConfig, vad_cfg

logger = logging.getLogger("nudgecoach.vad")


def chunk_level(pcm: np.ndarray) -> float:
    """RMS of an int16 (or float) chunk scaled to 0–100."""
    if pcm.size == 0:
        return 0.0
    audio = pcm.astype(np.float32)
    if pcm.dtype == np.int16:
        audio = audio / 32768.0
    rms = float(np.sqrt(np.mean(audio ** 2)))
    # Normal speech sits around 0.03–0.1 RMS
    return min(100.0, rms * 1000.0)


class VoiceActivityDetector:

    def __init__(
        self,
        config: VADConfig = vad_cfg,
        on_change: Optional[Callable[[bool], None]] = None,
        time_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cfg = config
        self._on_change = on_change
        self._time_fn = time_fn
        self._speaking = False
        self._above_since: Optional[float] = None
        self.level = 0.0

    @property
    def is_speaking(self) -> bool:
        return self._speaking

    def set_listener(self, on_change: Optional[Callable[[bool], None]]) -> None:
        self._on_change = on_change

    def process(self, chunk: bytes | np.ndarray) -> bool:
        pcm = np.frombuffer(chunk, dtype=np.int16) if isinstance(chunk, (bytes, bytearray)) else chunk
        self.level = chunk_level(pcm)
        now = self._time_fn()

        if not self._speaking:
            if self.level >= self._cfg.rise_threshold:
                if self._above_since is None:
                    self._above_since = now
                if now - self._above_since >= self._cfg.min_speech_duration:
                    self._set(True)
            else:
                self._above_since = None
        elif self.level < self._cfg.fall_threshold:
            self._above_since = None
            self._set(False)

        return self._speaking

    def reset(self) -> None:
        self._above_since = None
        if self._speaking:
            self._set(False)
        self.level = 0.0

    def _set(self, speaking: bool) -> None:
        self._speaking = speaking
        logger.debug(f"VAD: {'speech' if speaking else 'silence'} (level {self.level:.1f})")
        if self._on_change:
            try:
                self._on_change(speaking)
            except Exception as e:
                logger.error(f"VAD listener error: {e}")
