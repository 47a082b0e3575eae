"""
capture_filters.py

The two gates every captured event goes through before it reaches a sink:

1) FingerprintDeduplicator: drops the same logical interaction reported twice
   by different observation layers of one tab within a short window.
2) SessionCoherenceFilter: drops events from a stale instrumentation instance
   that keeps emitting on a page after a new session started there.

Both are plain per-source tables owned by the capture coordinator.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from observe_env import setup_logger

logger = setup_logger("CaptureFilters")

FINGERPRINT_BUCKET_MS = 200
DEFAULT_DEDUPE_WINDOW_MS = 250


def make_fingerprint(event_type: str, timestamp_ms: int, url: str) -> str:
    """type|coarse-timestamp|url. Two layers reporting one click land in the same bucket."""
    return f"{event_type}|{int(timestamp_ms) // FINGERPRINT_BUCKET_MS}|{url}"


# -----------------------------
# Dedup
# -----------------------------
class FingerprintDeduplicator:
    def __init__(self, window_ms: int = DEFAULT_DEDUPE_WINDOW_MS):
        self.window_ms = int(window_ms)
        self._recent: Dict[str, List[Tuple[str, int]]] = {}

    def should_accept(self, source_id: str, fingerprint: str, now: int) -> bool:
        entries = [
            (fp, ts) for (fp, ts) in self._recent.get(source_id, [])
            if now - ts < self.window_ms
        ]

        if any(fp == fingerprint for fp, _ in entries):
            self._recent[source_id] = entries
            logger.debug(f"duplicate dropped: source={source_id} fp={fingerprint}")
            return False

        entries.append((fingerprint, now))
        self._recent[source_id] = entries
        return True

    def forget(self, source_id: str) -> None:
        self._recent.pop(source_id, None)

    def reset(self) -> None:
        self._recent.clear()

    def __len__(self) -> int:
        return len(self._recent)


# -----------------------------
# Coherence
# -----------------------------
@dataclass(frozen=True)
class Admission:
    accept: bool
    reason: str = ""


@dataclass
class _SourceState:
    session_id: str
    url: str


class SessionCoherenceFilter:
    """
    Per-source {active session, active url}.

    - nothing recorded yet -> adopt, accept
    - same url, different session -> stale instance, reject
    - url changed -> adopt the newcomer, accept
    - both match -> accept
    """

    def __init__(self):
        self._active: Dict[str, _SourceState] = {}

    def admit(self, source_id: str, session_id: Optional[str], url: str) -> Admission:
        if not session_id:
            return Admission(True, "no_session")

        state = self._active.get(source_id)
        if state is None:
            self._active[source_id] = _SourceState(session_id=session_id, url=url)
            return Admission(True, "adopted")

        if url == state.url:
            if session_id != state.session_id:
                logger.debug(
                    f"stale event dropped: source={source_id} session={session_id} "
                    f"active={state.session_id} url={url}"
                )
                return Admission(False, "stale_session")
            return Admission(True, "match")

        self._active[source_id] = _SourceState(session_id=session_id, url=url)
        return Admission(True, "navigated")

    def active_session(self, source_id: str) -> Optional[str]:
        state = self._active.get(source_id)
        return state.session_id if state else None

    def forget(self, source_id: str) -> None:
        self._active.pop(source_id, None)

    def reset(self) -> None:
        self._active.clear()
