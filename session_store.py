"""
session_store.py

In-process state behind the ingest server:

- raw record log (most recent first-class records, capped)
- sessions: append-only event logs keyed by session id
- artifact reassembly + finalized recordings, linked to sessions by time overlap
- derived rules

Nothing here survives a restart.
"""

from __future__ import annotations

import base64
import binascii
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from chunk_reassembler import Artifact, ChunkReassembler
from derive_rule import derive_rule, prune_session
from observe_env import PipelineSettings, setup_logger
from observe_models import ChunkRecord, CompletionRecord, Event, EventRecord, Rule
from pipeline_errors import ChunkStateError
from session_correlator import Correlation, SessionArtifactCorrelator, SessionWindow

logger = setup_logger("SessionStore")

RAW_LOG_LIMIT = 5000
RECENT_LIMIT = 200
RECORDINGS_LIST_LIMIT = 10
RULES_LIST_LIMIT = 50

TEMP_PREFIX = "temp_"
GLOBAL_PREFIX = "session_"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Session:
    session_id: str
    start_time: int
    last_event_time: int
    events: List[Event] = field(default_factory=list)
    recording_id: Optional[str] = None
    cleaned_events: Optional[List[Event]] = None
    cleaned_at: Optional[int] = None

    def append(self, ev: Event) -> None:
        self.events.append(ev)
        self.last_event_time = max(self.last_event_time, ev.timestamp)
        self.start_time = min(self.start_time, ev.timestamp)

    def sealed_events(self) -> List[Event]:
        """Events in non-decreasing timestamp order (stable for ties)."""
        return sorted(self.events, key=lambda e: e.timestamp)

    def window(self) -> SessionWindow:
        return SessionWindow(
            session_id=self.session_id,
            start_time=self.start_time,
            last_event_time=self.last_event_time,
            recording_id=self.recording_id,
        )

    def summary(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "start_time": self.start_time,
            "last_event_time": self.last_event_time,
            "event_count": len(self.events),
            "recording_id": self.recording_id,
            "cleaned_count": len(self.cleaned_events) if self.cleaned_events is not None else None,
            "cleaned_at": self.cleaned_at,
        }

    def to_dict(self) -> Dict[str, Any]:
        d = self.summary()
        d["events"] = [e.model_dump(exclude_none=True) for e in self.sealed_events()]
        if self.cleaned_events is not None:
            d["cleaned_events"] = [e.model_dump(exclude_none=True) for e in self.cleaned_events]
        return d


@dataclass
class StoredRecording:
    artifact: Artifact
    linked_session_id: Optional[str] = None
    overlap_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        d = self.artifact.to_dict()
        d["linked_session_id"] = self.linked_session_id
        d["overlap_ms"] = self.overlap_ms
        return d


class SessionStore:
    def __init__(
        self,
        settings: Optional[PipelineSettings] = None,
        clock: Callable[[], int] = _now_ms,
    ):
        self.settings = settings or PipelineSettings.from_env()
        self._clock = clock
        self.records: Deque[Dict[str, Any]] = deque(maxlen=RAW_LOG_LIMIT)
        self.sessions: Dict[str, Session] = {}
        self.reassembler = ChunkReassembler(clock=clock)
        self.correlator = SessionArtifactCorrelator.from_settings(self.settings)
        self.recordings: List[StoredRecording] = []
        self.rules: List[Rule] = []

    # -----------------------------
    # Events
    # -----------------------------
    def ingest(self, record: EventRecord) -> Optional[str]:
        """Append a sink record. Returns the session id the event landed in, if any."""
        self.records.append(record.model_dump(exclude_none=True))

        if record.type != "browser_event" or record.event is None:
            return None

        ev = record.event
        sid = ev.session_id or record.session_id
        if not sid:
            return None
        if ev.session_id != sid:
            ev = ev.model_copy(update={"session_id": sid})

        if sid.startswith(TEMP_PREFIX):
            target = self._merge_target(ev.timestamp)
            if target is not None:
                temp = self.sessions.pop(sid, None)
                if temp is not None:
                    logger.info(f"merging temp session {sid} into {target.session_id}")
                    for old in temp.events:
                        target.append(old)
                target.append(ev)
                return target.session_id

        sess = self.sessions.get(sid)
        if sess is None:
            sess = Session(session_id=sid, start_time=ev.timestamp, last_event_time=ev.timestamp)
            self.sessions[sid] = sess
            logger.info(f"new session {sid}")
        sess.append(ev)
        return sid

    def _merge_target(self, ts: int) -> Optional[Session]:
        window = self.settings.temp_merge_window_ms
        for s in self.sessions.values():
            if s.session_id.startswith(GLOBAL_PREFIX) and abs(s.start_time - ts) < window:
                return s
        return None

    def recent_records(self, limit: int = RECENT_LIMIT) -> List[Dict[str, Any]]:
        return list(self.records)[-limit:]

    # -----------------------------
    # Artifacts
    # -----------------------------
    def put_chunk(self, chunk: ChunkRecord) -> Dict[str, int]:
        self.abandon_stale_artifacts()
        try:
            payload = base64.b64decode(chunk.payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ChunkStateError(chunk.artifact_id, f"payload is not base64: {e}")
        ack = self.reassembler.put_chunk(chunk.artifact_id, chunk.index, chunk.total, payload, chunk.mime)
        return {"received": ack["accepted"]}

    def complete(self, rec: CompletionRecord) -> StoredRecording:
        artifact = self.reassembler.finalize(
            rec.artifact_id,
            duration_ms=rec.duration,
            mime=rec.mime,
            completed_at=rec.completed_at,
        )
        corr: Correlation = self.correlator.correlate(
            artifact.completed_at,
            artifact.duration_ms,
            (s.window() for s in self.sessions.values()),
            artifact_id=artifact.artifact_id,
        )
        stored = StoredRecording(artifact=artifact, linked_session_id=corr.session_id, overlap_ms=corr.overlap_ms)
        if corr.session_id is not None:
            self.sessions[corr.session_id].recording_id = artifact.artifact_id
        self.recordings.append(stored)
        return stored

    def list_recordings(self, limit: int = RECORDINGS_LIST_LIMIT) -> List[Dict[str, Any]]:
        return [r.to_dict() for r in self.recordings[-limit:]]

    def get_recording(self, artifact_id: str) -> Optional[StoredRecording]:
        for r in reversed(self.recordings):
            if r.artifact.artifact_id == artifact_id:
                return r
        return None

    # -----------------------------
    # Sessions
    # -----------------------------
    def get_session(self, session_id: str) -> Optional[Session]:
        return self.sessions.get(session_id)

    def list_sessions(self) -> List[Dict[str, Any]]:
        return [s.summary() for s in sorted(self.sessions.values(), key=lambda s: s.start_time)]

    def prune(self, session_id: str) -> Optional[Session]:
        sess = self.sessions.get(session_id)
        if sess is None:
            return None
        sess.cleaned_events = prune_session(sess.sealed_events())
        sess.cleaned_at = self._clock()
        logger.info(f"pruned {session_id}: {len(sess.events)} -> {len(sess.cleaned_events)} events")
        return sess

    def cleanup(self, ttl_h: Optional[float] = None) -> int:
        self.abandon_stale_artifacts()
        ttl_ms = int((ttl_h if ttl_h is not None else self.settings.session_ttl_h) * 3600 * 1000)
        cutoff = self._clock() - ttl_ms
        old = [sid for sid, s in self.sessions.items() if s.last_event_time < cutoff]
        for sid in old:
            del self.sessions[sid]
        if old:
            logger.info(f"cleaned up {len(old)} old session(s)")
        return len(old)

    def abandon_stale_artifacts(self) -> List[str]:
        """Drop upload buffers that never completed within artifact_max_age_ms."""
        return self.reassembler.abandon_stale(self.settings.artifact_max_age_ms)

    # -----------------------------
    # Rules
    # -----------------------------
    def rule_from_session(self, session_id: str, name: Optional[str] = None, use_cleaned: bool = False) -> Optional[Rule]:
        sess = self.sessions.get(session_id)
        if sess is None:
            return None
        events = sess.cleaned_events if (use_cleaned and sess.cleaned_events is not None) else sess.sealed_events()
        rule = derive_rule(events, name=name or session_id, source_session_id=session_id)
        return self.save_rule(rule)

    def save_rule(self, rule: Rule) -> Rule:
        if rule.created_at is None:
            rule = rule.model_copy(update={"created_at": self._clock()})
        if rule.rule_id is None:
            rule = rule.model_copy(update={"rule_id": f"rule_{rule.created_at}_{len(self.rules) + 1}"})
        self.rules.append(rule)
        return rule

    def list_rules(self, limit: int = RULES_LIST_LIMIT) -> List[Rule]:
        return self.rules[-limit:]

    # -----------------------------
    # Lifecycle
    # -----------------------------
    def clear(self) -> None:
        self.records.clear()
        self.sessions.clear()
        self.reassembler.reset()
        self.recordings.clear()
        self.rules.clear()

    def stats(self) -> Dict[str, int]:
        return {
            "records": len(self.records),
            "sessions": len(self.sessions),
            "pending_artifacts": len(self.reassembler),
            "recordings": len(self.recordings),
            "rules": len(self.rules),
        }
