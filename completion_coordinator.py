"""
completion_coordinator.py

Sends the completion record for an artifact exactly once, and only after both
signals are in:

  1) every chunk index in [0, total) was acknowledged by the artifact sink
  2) the producer reported the recording metadata (duration, mime, completed_at)

The two signals race; whichever arrives last triggers the attempt. A rejected
completion is treated as transient ("the sink is still assembling") and is
retried on a bounded schedule before the artifact is given up. A chunk the
sink refuses outright (any status but 0) ends the artifact at once.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional, Set, Union

from observe_env import PipelineSettings, setup_logger
from observe_models import CompletionRecord, SinkAck
from pipeline_errors import ChunkRejected, CompletionRejected

logger = setup_logger("CompletionCoordinator")

Finalizer = Callable[[CompletionRecord], Awaitable[SinkAck]]
Sleeper = Callable[[float], Awaitable[None]]

# finished artifact ids remembered to drop late signals
FINISHED_MEMORY = 256


@dataclass
class CompletionBackoff:
    base_ms: int = 300
    step_ms: int = 300
    cap_ms: int = 2000
    max_retries: int = 3

    def delay_ms(self, retry: int) -> int:
        """Delay before retry number `retry` (1-based)."""
        return min(self.cap_ms, self.base_ms + retry * self.step_ms)

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "CompletionBackoff":
        return cls(
            base_ms=settings.completion_base_ms,
            step_ms=settings.completion_step_ms,
            cap_ms=settings.completion_cap_ms,
            max_retries=settings.completion_max_retries,
        )


@dataclass
class CompletionMetadata:
    duration_ms: Optional[int] = None
    mime: Optional[str] = None
    completed_at: Optional[int] = None


@dataclass
class PendingCompletion:
    artifact_id: str
    expected_total: int = 0
    acknowledged: Set[int] = field(default_factory=set)
    metadata: Optional[CompletionMetadata] = None
    retry_count: int = 0
    in_flight: bool = False

    def all_acked(self) -> bool:
        return self.expected_total > 0 and all(i in self.acknowledged for i in range(self.expected_total))

    def ready(self) -> bool:
        return self.all_acked() and self.metadata is not None

    def to_record(self) -> CompletionRecord:
        md = self.metadata or CompletionMetadata()
        return CompletionRecord(
            artifact_id=self.artifact_id,
            duration=md.duration_ms,
            mime=md.mime,
            completed_at=md.completed_at,
        )


@dataclass
class CompletionOutcome:
    artifact_id: str
    ok: bool
    attempts: int
    ack: Optional[SinkAck] = None
    error: Optional[Union[CompletionRejected, ChunkRejected]] = None


class CompletionCoordinator:
    def __init__(
        self,
        finalize: Finalizer,
        backoff: Optional[CompletionBackoff] = None,
        sleep: Sleeper = asyncio.sleep,
        on_outcome: Optional[Callable[[CompletionOutcome], None]] = None,
        finished_memory: int = FINISHED_MEMORY,
    ):
        self._finalize = finalize
        self.backoff = backoff or CompletionBackoff()
        self._sleep = sleep
        self._on_outcome = on_outcome
        self._pending: Dict[str, PendingCompletion] = {}
        self._finished: "OrderedDict[str, None]" = OrderedDict()
        self._finished_memory = finished_memory

    # -----------------------------
    # Signals
    # -----------------------------
    async def chunk_sent(
        self, artifact_id: str, index: int, total: int, ack: SinkAck
    ) -> Optional[CompletionOutcome]:
        if artifact_id in self._finished:
            return None
        st = self._state(artifact_id)
        if total > 0:
            st.expected_total = total
        if ack.ok:
            st.acknowledged.add(index)
        elif ack.status != 0:
            err = ChunkRejected(artifact_id, index, ack.status)
            logger.error(str(err))
            return self._finish(CompletionOutcome(artifact_id, False, st.retry_count, ack=ack, error=err))
        else:
            logger.warning(f"chunk {index}/{total} of {artifact_id} not acknowledged (status=0)")
        return await self.try_finalize(artifact_id)

    async def metadata_received(
        self,
        artifact_id: str,
        duration_ms: Optional[int] = None,
        mime: Optional[str] = None,
        completed_at: Optional[int] = None,
    ) -> Optional[CompletionOutcome]:
        if artifact_id in self._finished:
            return None
        st = self._state(artifact_id)
        st.metadata = CompletionMetadata(duration_ms=duration_ms, mime=mime, completed_at=completed_at)
        return await self.try_finalize(artifact_id)

    # -----------------------------
    # Finalize with bounded retries
    # -----------------------------
    async def try_finalize(self, artifact_id: str) -> Optional[CompletionOutcome]:
        st = self._pending.get(artifact_id)
        if st is None or st.in_flight or not st.ready():
            return None

        st.in_flight = True
        record = st.to_record()
        last_ack: Optional[SinkAck] = None

        while True:
            attempt = st.retry_count + 1
            try:
                last_ack = await self._finalize(record)
            except Exception as e:
                logger.warning(f"completion {artifact_id} attempt {attempt} raised: {e}")
                last_ack = SinkAck(ok=False, status=0, body={"error": str(e)})

            if last_ack.ok:
                logger.info(f"completion {artifact_id} accepted on attempt {attempt}")
                return self._finish(CompletionOutcome(artifact_id, True, attempt, ack=last_ack))

            if st.retry_count >= self.backoff.max_retries:
                err = CompletionRejected(artifact_id, attempt, last_ack.status or None)
                logger.error(str(err))
                return self._finish(CompletionOutcome(artifact_id, False, attempt, ack=last_ack, error=err))

            st.retry_count += 1
            delay = self.backoff.delay_ms(st.retry_count)
            logger.warning(
                f"completion {artifact_id} rejected (status={last_ack.status}); "
                f"retry {st.retry_count}/{self.backoff.max_retries} in {delay}ms"
            )
            await self._sleep(delay / 1000.0)

    # -----------------------------
    # Helpers
    # -----------------------------
    def _state(self, artifact_id: str) -> PendingCompletion:
        st = self._pending.get(artifact_id)
        if st is None:
            st = PendingCompletion(artifact_id=artifact_id)
            self._pending[artifact_id] = st
        return st

    def _finish(self, outcome: CompletionOutcome) -> CompletionOutcome:
        self._pending.pop(outcome.artifact_id, None)
        self._finished[outcome.artifact_id] = None
        while len(self._finished) > self._finished_memory:
            self._finished.popitem(last=False)
        if self._on_outcome is not None:
            self._on_outcome(outcome)
        return outcome

    def pending(self, artifact_id: str) -> Optional[PendingCompletion]:
        return self._pending.get(artifact_id)

    def reset(self) -> None:
        self._pending.clear()
        self._finished.clear()
