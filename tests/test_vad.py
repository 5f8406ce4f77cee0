from __future__ import annotations

from typing import List

import numpy as np

from nudgecoach.core.config import VADConfig
from nudgecoach.processing.vad import VoiceActivityDetector, chunk_level

CFG = VADConfig(rise_threshold=30.0, fall_offset=12.0, fall_floor=5.0, min_speech_duration=0.25)


def _tone(amplitude: float, samples: int = 1600) -> bytes:
    t = np.arange(samples) / 16000.0
    wave = amplitude * np.sin(2 * np.pi * 220 * t)
    return (wave * 32767).astype(np.int16).tobytes()


class Ticker:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_levels() -> None:
    assert chunk_level(np.zeros(160, dtype=np.int16)) == 0.0
    assert chunk_level(np.array([], dtype=np.int16)) == 0.0
    assert chunk_level(np.full(160, 32767, dtype=np.int16)) == 100.0


def test_speech_requires_minimum_duration() -> None:
    clock = Ticker()
    changes: List[bool] = []
    vad = VoiceActivityDetector(CFG, on_change=changes.append, time_fn=clock)

    loud = _tone(0.2)
    assert not vad.process(loud)
    clock.now = 0.1
    assert not vad.process(loud)
    clock.now = 0.3
    assert vad.process(loud)
    assert changes == [True]


def test_short_burst_is_ignored() -> None:
    clock = Ticker()
    vad = VoiceActivityDetector(CFG, time_fn=clock)
    vad.process(_tone(0.2))
    clock.now = 0.1
    vad.process(_tone(0.0))
    clock.now = 0.4
    assert not vad.process(_tone(0.2))


def test_hysteresis_holds_between_thresholds() -> None:
    clock = Ticker()
    changes: List[bool] = []
    vad = VoiceActivityDetector(CFG, on_change=changes.append, time_fn=clock)
    vad.process(_tone(0.2))
    clock.now = 0.5
    vad.process(_tone(0.2))

    # RMS level ~21: between the fall and rise thresholds
    middle = _tone(0.03)
    assert CFG.fall_threshold <= chunk_level(np.frombuffer(middle, dtype=np.int16)) < CFG.rise_threshold
    vad.process(middle)
    assert vad.is_speaking

    assert not vad.process(_tone(0.0))
    assert changes == [True, False]


def test_reset_reports_silence() -> None:
    clock = Ticker()
    changes: List[bool] = []
    vad = VoiceActivityDetector(CFG, on_change=changes.append, time_fn=clock)
    vad.process(_tone(0.2))
    clock.now = 1.0
    vad.process(_tone(0.2))
    vad.reset()
    assert changes == [True, False]
    assert vad.level == 0.0
