"""
session_correlator.py

Links a finished video artifact to the event session it most likely belongs to.

Sessions and recordings come from independent observers with no shared id, so
the link is a best-effort time-window match:

  artifact window = [completed_at - duration, completed_at]  (+/- grace)
  session window  = [start - grace, last_event + grace]

The session with the largest overlap wins, provided the overlap clears a
minimum threshold. Sessions already holding a recording are not candidates.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from observe_env import PipelineSettings, setup_logger

logger = setup_logger("SessionCorrelator")


@dataclass(frozen=True)
class SessionWindow:
    session_id: str
    start_time: int
    last_event_time: Optional[int] = None
    recording_id: Optional[str] = None


@dataclass(frozen=True)
class Correlation:
    session_id: Optional[str]
    overlap_ms: int

    @property
    def linked(self) -> bool:
        return self.session_id is not None


def overlap_ms(a: Tuple[int, int], b: Tuple[int, int]) -> int:
    return max(0, min(a[1], b[1]) - max(a[0], b[0]))


class SessionArtifactCorrelator:
    def __init__(
        self,
        grace_ms: int = 1500,
        min_overlap_ms: int = 500,
        fallback_duration_ms: int = 8000,
    ):
        self.grace_ms = grace_ms
        self.min_overlap_ms = min_overlap_ms
        self.fallback_duration_ms = fallback_duration_ms

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "SessionArtifactCorrelator":
        return cls(
            grace_ms=settings.correlation_grace_ms,
            min_overlap_ms=settings.min_overlap_ms,
            fallback_duration_ms=settings.fallback_duration_ms,
        )

    def artifact_window(self, completed_at: int, duration_ms: Optional[int]) -> Tuple[int, int]:
        duration = duration_ms if duration_ms else self.fallback_duration_ms
        start = max(0, completed_at - duration - self.grace_ms)
        return (start, completed_at + self.grace_ms)

    def session_window(self, s: SessionWindow) -> Tuple[int, int]:
        last = s.last_event_time if s.last_event_time is not None else s.start_time
        return (max(0, s.start_time - self.grace_ms), last + self.grace_ms)

    def correlate(
        self,
        completed_at: int,
        duration_ms: Optional[int],
        sessions: Iterable[SessionWindow],
        artifact_id: str = "",
    ) -> Correlation:
        art = self.artifact_window(completed_at, duration_ms)

        best_id: Optional[str] = None
        best = 0
        for s in sessions:
            if s.recording_id:
                logger.debug(f"session {s.session_id} already has recording {s.recording_id}, skipping")
                continue
            ov = overlap_ms(art, self.session_window(s))
            if ov > best:
                best, best_id = ov, s.session_id

        if best_id is not None and best > self.min_overlap_ms:
            logger.info(f"linked recording {artifact_id or '?'} -> session {best_id} (overlap {best}ms)")
            return Correlation(best_id, best)

        logger.info(f"no session for recording {artifact_id or '?'} (best overlap {best}ms)")
        return Correlation(None, best)
