"""
capture_coordinator.py

Client side of the pipeline, one instance per browser:

  capture source -> FingerprintDeduplicator -> SessionCoherenceFilter
                 -> outbound queue -> periodic flush -> event sink

  video bytes -> chunk queue -> periodic flush -> artifact sink
              -> CompletionCoordinator (acks + metadata) -> completion record

ingest() never blocks and never raises; a failed batch stays queued (at the
front) for the next tick. All per-source tables and queues are fields of the
coordinator, with new/reset/dispose as the only lifecycle.

Sinks:
- HttpIngestClient: the ingest server over HTTP (requests), first reachable URL wins
- JsonlEventSink:   events.jsonl + reassembled video files in a local directory
- LocalSink:        an in-process SessionStore
"""

from __future__ import annotations

import asyncio
import base64
import json
import math
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Protocol, Set

import requests

from capture_filters import FingerprintDeduplicator, SessionCoherenceFilter
from chunk_reassembler import ChunkReassembler
from completion_coordinator import CompletionBackoff, CompletionCoordinator, CompletionOutcome
from observe_env import PipelineSettings, setup_logger
from observe_models import ChunkRecord, CompletionRecord, Event, EventRecord, SinkAck
from pipeline_errors import ChunkStateError, InvalidChunkIndex, UnknownArtifact
from session_store import SessionStore

logger = setup_logger("CaptureCoordinator")


def _now_ms() -> int:
    return int(time.time() * 1000)


# =============================================================================
# Sinks
# =============================================================================
class IngestSink(Protocol):
    def post_events(self, records: List[EventRecord]) -> SinkAck: ...

    def post_chunk(self, chunk: ChunkRecord) -> SinkAck: ...

    def post_completion(self, record: CompletionRecord) -> SinkAck: ...


class HttpIngestClient:
    def __init__(self, urls: List[str], timeout_s: float = 10.0, session: Optional[requests.Session] = None):
        self.urls = [u.rstrip("/") for u in urls if u]
        self.timeout_s = timeout_s
        self.session = session or requests.Session()

    def _post(self, path: str, payload: Any) -> SinkAck:
        last = SinkAck(ok=False, status=0)
        for base in self.urls:
            try:
                r = self.session.post(base + path, json=payload, timeout=self.timeout_s)
            except requests.RequestException as e:
                logger.debug(f"POST {base}{path} failed: {e}")
                last = SinkAck(ok=False, status=0, body={"error": str(e)})
                continue
            try:
                body = r.json()
            except ValueError:
                body = {}
            if not isinstance(body, dict):
                body = {"data": body}
            # the server answered: its verdict stands, no point asking the next one
            return SinkAck(ok=r.ok, status=r.status_code, body=body)
        return last

    def post_events(self, records: List[EventRecord]) -> SinkAck:
        return self._post("/events", [r.model_dump(mode="json", exclude_none=True) for r in records])

    def post_chunk(self, chunk: ChunkRecord) -> SinkAck:
        return self._post("/recordings/chunks", chunk.model_dump(mode="json", exclude_none=True))

    def post_completion(self, record: CompletionRecord) -> SinkAck:
        return self._post("/recordings/complete", record.model_dump(mode="json", exclude_none=True))


_MIME_EXT = {"video/webm": ".webm", "video/mp4": ".mp4"}


class JsonlEventSink:
    """Writes events to <dir>/events.jsonl and reassembled artifacts next to it."""

    def __init__(self, output_dir: Path):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.events_path = self.output_dir / "events.jsonl"
        self.reassembler = ChunkReassembler()

    def post_events(self, records: List[EventRecord]) -> SinkAck:
        with self.events_path.open("a", encoding="utf-8") as f:
            for r in records:
                f.write(json.dumps(r.model_dump(mode="json", exclude_none=True), ensure_ascii=False) + "\n")
        return SinkAck(ok=True, status=200, body={"accepted": len(records)})

    def post_chunk(self, chunk: ChunkRecord) -> SinkAck:
        try:
            ack = self.reassembler.put_chunk(
                chunk.artifact_id, chunk.index, chunk.total, base64.b64decode(chunk.payload), chunk.mime
            )
        except (InvalidChunkIndex, ChunkStateError) as e:
            return SinkAck(ok=False, status=409, body={"error": str(e)})
        return SinkAck(ok=True, status=200, body={"received": ack["accepted"]})

    def post_completion(self, record: CompletionRecord) -> SinkAck:
        try:
            art = self.reassembler.finalize(record.artifact_id, record.duration, record.mime, record.completed_at)
        except UnknownArtifact as e:
            return SinkAck(ok=False, status=404, body={"error": str(e)})
        except ChunkStateError as e:
            return SinkAck(ok=False, status=409, body={"error": str(e)})
        path = self.output_dir / f"{art.artifact_id}{_MIME_EXT.get(art.mime, '.bin')}"
        path.write_bytes(art.payload)
        logger.info(f"wrote {path} ({art.size} bytes)")
        return SinkAck(ok=True, status=200, body={"path": str(path), "size_bytes": art.size})


class LocalSink:
    """Feeds an in-process SessionStore, same status codes as the HTTP server."""

    def __init__(self, store: SessionStore):
        self.store = store

    def post_events(self, records: List[EventRecord]) -> SinkAck:
        for r in records:
            self.store.ingest(r)
        return SinkAck(ok=True, status=200, body={"accepted": len(records)})

    def post_chunk(self, chunk: ChunkRecord) -> SinkAck:
        try:
            return SinkAck(ok=True, status=200, body=self.store.put_chunk(chunk))
        except InvalidChunkIndex as e:
            return SinkAck(ok=False, status=400, body={"error": str(e)})
        except ChunkStateError as e:
            return SinkAck(ok=False, status=409, body={"error": str(e)})

    def post_completion(self, record: CompletionRecord) -> SinkAck:
        try:
            stored = self.store.complete(record)
        except UnknownArtifact as e:
            return SinkAck(ok=False, status=404, body={"error": str(e)})
        except ChunkStateError:
            return SinkAck(ok=False, status=409, body={"error": "chunks_incomplete"})
        return SinkAck(ok=True, status=200, body=stored.to_dict())


# =============================================================================
# Coordinator
# =============================================================================
@dataclass
class CaptureSource:
    source_id: str
    current_url: str = ""
    active_session_id: Optional[str] = None
    first_seen: int = 0


class CaptureCoordinator:
    def __init__(
        self,
        sink: IngestSink,
        settings: Optional[PipelineSettings] = None,
        clock=_now_ms,
        sleep=asyncio.sleep,
    ):
        self.settings = settings or PipelineSettings.from_env()
        self.sink = sink
        self._clock = clock

        self.dedup = FingerprintDeduplicator(self.settings.dedupe_window_ms)
        self.coherence = SessionCoherenceFilter()
        self.completion = CompletionCoordinator(
            self._send_completion,
            backoff=CompletionBackoff.from_settings(self.settings),
            sleep=sleep,
            on_outcome=self._record_outcome,
        )

        self.sources: Dict[str, CaptureSource] = {}
        self._events: Deque[EventRecord] = deque()
        self._chunks: Deque[ChunkRecord] = deque()
        self._tasks: Set[asyncio.Task] = set()
        self._flush_task: Optional[asyncio.Task] = None
        self._flush_lock = asyncio.Lock()
        self._running = False

        self.outcomes: List[CompletionOutcome] = []
        self.counters: Dict[str, int] = {"accepted": 0, "duplicate": 0, "stale": 0, "sent": 0}

    # -----------------------------
    # Ingestion (sync, never blocks)
    # -----------------------------
    def ingest(self, source_id: str, event: Event) -> bool:
        now = self._clock()

        if not self.dedup.should_accept(source_id, event.fingerprint, now):
            self.counters["duplicate"] += 1
            return False

        adm = self.coherence.admit(source_id, event.session_id, event.url)
        if not adm.accept:
            self.counters["stale"] += 1
            return False

        src = self.sources.get(source_id)
        if src is None:
            src = CaptureSource(source_id=source_id, first_seen=now)
            self.sources[source_id] = src
        src.current_url = event.url or src.current_url
        src.active_session_id = self.coherence.active_session(source_id) or src.active_session_id

        self._events.append(
            EventRecord(
                type="browser_event",
                source_id=source_id,
                session_id=event.session_id,
                url=event.url,
                event=event,
                timestamp=now,
            )
        )
        self.counters["accepted"] += 1
        return True

    def control(self, record_type: str, source_id: Optional[str] = None, **fields: Any) -> None:
        """Queue a non-event record (tab_monitored, tab_closed, recording_control, ...)."""
        self._events.append(
            EventRecord(type=record_type, source_id=source_id, timestamp=self._clock(), **fields)
        )

    def close_source(self, source_id: str) -> None:
        src = self.sources.pop(source_id, None)
        self.dedup.forget(source_id)
        self.coherence.forget(source_id)
        self.control("tab_closed", source_id, url=src.current_url if src else "")

    # -----------------------------
    # Artifacts
    # -----------------------------
    def queue_artifact(self, artifact_id: str, data: bytes, mime: str = "video/webm") -> int:
        size = self.settings.chunk_bytes
        total = max(1, math.ceil(len(data) / size))
        for i in range(total):
            piece = data[i * size:(i + 1) * size]
            self._chunks.append(
                ChunkRecord(
                    artifact_id=artifact_id,
                    index=i,
                    total=total,
                    payload=base64.b64encode(piece).decode("ascii"),
                    mime=mime,
                    timestamp=self._clock(),
                )
            )
        logger.info(f"queued artifact {artifact_id}: {len(data)} bytes in {total} chunk(s)")
        return total

    async def finish_artifact(
        self,
        artifact_id: str,
        duration_ms: Optional[int],
        mime: Optional[str] = None,
        completed_at: Optional[int] = None,
    ) -> Optional[CompletionOutcome]:
        return await self.completion.metadata_received(
            artifact_id,
            duration_ms=duration_ms,
            mime=mime,
            completed_at=completed_at if completed_at is not None else self._clock(),
        )

    async def _send_completion(self, record: CompletionRecord) -> SinkAck:
        return await asyncio.to_thread(self.sink.post_completion, record)

    def _record_outcome(self, outcome: CompletionOutcome) -> None:
        self.outcomes.append(outcome)

    # -----------------------------
    # Flush
    # -----------------------------
    async def flush(self) -> None:
        async with self._flush_lock:
            await self._flush_events()
            await self._flush_chunks()

    async def _post(self, send, payload) -> SinkAck:
        """Run a blocking sink call off the loop; a raising sink counts as unreachable."""
        try:
            return await asyncio.to_thread(send, payload)
        except Exception as e:
            logger.warning(f"sink call failed: {e}")
            return SinkAck(ok=False, status=0, body={"error": str(e)})

    async def _flush_events(self) -> None:
        if not self._events:
            return
        batch = list(self._events)
        self._events.clear()
        ack = await self._post(self.sink.post_events, batch)
        if ack.ok:
            self.counters["sent"] += len(batch)
            return
        logger.warning(f"event flush failed (status={ack.status}); {len(batch)} record(s) re-queued")
        self._events.extendleft(reversed(batch))

    async def _flush_chunks(self) -> None:
        while self._chunks:
            chunk = self._chunks[0]
            ack = await self._post(self.sink.post_chunk, chunk)
            if not ack.ok and ack.status == 0:
                logger.warning(f"chunk upload {chunk.artifact_id}#{chunk.index} unreachable; retry next tick")
                return
            self._chunks.popleft()
            self._spawn(self.completion.chunk_sent(chunk.artifact_id, chunk.index, chunk.total, ack))

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _flush_loop(self) -> None:
        interval = self.settings.flush_interval_ms / 1000.0
        while self._running:
            await asyncio.sleep(interval)
            try:
                await self.flush()
            except Exception as e:
                logger.error(f"flush tick failed: {e}", exc_info=True)

    # -----------------------------
    # Lifecycle
    # -----------------------------
    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._flush_task = asyncio.create_task(self._flush_loop())
        logger.info(f"flush loop started ({self.settings.flush_interval_ms}ms)")

    async def stop(self) -> None:
        """Stop the timer, then drain queues and pending completions best-effort."""
        self._running = False
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        try:
            await self.flush()
        except Exception as e:
            logger.error(f"final flush failed: {e}")
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def pending(self) -> Dict[str, int]:
        return {"events": len(self._events), "chunks": len(self._chunks), "completions": len(self._tasks)}

    def reset(self) -> None:
        self.dedup.reset()
        self.coherence.reset()
        self.completion.reset()
        self.sources.clear()
        self._events.clear()
        self._chunks.clear()
        self.outcomes.clear()
        for k in self.counters:
            self.counters[k] = 0

    async def dispose(self) -> None:
        await self.stop()
        self.reset()
