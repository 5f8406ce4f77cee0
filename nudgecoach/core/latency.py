"""
NudgeCoach — Start-up Latency Tracer

  start_requested → media_ready → config_fetched → connected → first_assistant_turn

One tracer per controller, reset on every start. Exposed through
``GET /sessions`` so slow starts can be attributed to a stage.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger("nudgecoach.latency")

MILESTONES = (
    "start_requested",
    "media_ready",
    "config_fetched",
    "connected",
    "first_assistant_turn",
)

# (label, from, to)
_SPANS = (
    ("start_to_media_ms", "start_requested", "media_ready"),
    ("start_to_config_ms", "start_requested", "config_fetched"),
    ("start_to_connected_ms", "start_requested", "connected"),
    ("connected_to_first_turn_ms", "connected", "first_assistant_turn"),
)


@dataclass
class LatencyTrace:
    session_id: str = ""
    marks: Dict[str, float] = field(default_factory=dict)

    def span_ms(self, start: str, end: str) -> Optional[float]:
        if start in self.marks and end in self.marks:
            return round((self.marks[end] - self.marks[start]) * 1000, 1)
        return None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"session_id": self.session_id}
        d.update({name: self.marks[name] for name in MILESTONES if name in self.marks})
        d["deltas"] = {label: self.span_ms(a, b) for label, a, b in _SPANS}
        return d


class LatencyTracer:

    def __init__(self, session_id: str) -> None:
        self._trace = LatencyTrace(session_id=session_id)

    @property
    def trace(self) -> LatencyTrace:
        return self._trace

    def mark(self, milestone: str) -> None:
        """First mark wins; later marks of the same milestone are ignored."""
        if milestone not in MILESTONES:
            raise ValueError(f"Unknown latency milestone: {milestone}")
        marks = self._trace.marks
        if milestone in marks:
            return
        marks[milestone] = time.time()
        start = marks.get("start_requested")
        since = f" (+{round((marks[milestone] - start) * 1000, 1)}ms)" if start is not None else ""
        logger.info(f"[{self._trace.session_id}] LATENCY {milestone}{since}")

    def reset(self) -> None:
        self._trace = LatencyTrace(session_id=self._trace.session_id)

    def summary(self) -> Dict[str, Any]:
        return self._trace.to_dict()
