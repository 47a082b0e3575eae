"""Tests for the completion coordinator: both arrival orders, retries, give-up."""
from __future__ import annotations

from typing import List

import pytest

from completion_coordinator import CompletionBackoff, CompletionCoordinator
from observe_models import CompletionRecord, SinkAck
from pipeline_errors import ChunkRejected, CompletionRejected

OK = SinkAck(ok=True, status=200)
BUSY = SinkAck(ok=False, status=409, body={"detail": "chunks_incomplete"})


class FakeFinalizer:
    def __init__(self, acks: List[SinkAck]):
        self.acks = list(acks)
        self.calls: List[CompletionRecord] = []

    async def __call__(self, record: CompletionRecord) -> SinkAck:
        self.calls.append(record)
        return self.acks.pop(0) if len(self.acks) > 1 else self.acks[0]


def make(acks, clock, outcomes=None):
    fin = FakeFinalizer(acks)
    coord = CompletionCoordinator(
        fin,
        sleep=clock.sleep,
        on_outcome=(outcomes.append if outcomes is not None else None),
    )
    return fin, coord


def test_backoff_schedule():
    b = CompletionBackoff()
    assert [b.delay_ms(n) for n in (1, 2, 3)] == [600, 900, 1200]
    assert CompletionBackoff(cap_ms=1000).delay_ms(3) == 1000


@pytest.mark.asyncio
async def test_chunks_then_metadata(clock):
    fin, coord = make([OK], clock)
    for i in range(3):
        assert await coord.chunk_sent("rec", i, 3, OK) is None
    assert fin.calls == []

    outcome = await coord.metadata_received("rec", duration_ms=4000, mime="video/webm", completed_at=9000)
    assert outcome.ok
    assert len(fin.calls) == 1
    assert fin.calls[0].duration == 4000
    assert fin.calls[0].completed_at == 9000
    assert coord.pending("rec") is None


@pytest.mark.asyncio
async def test_metadata_then_chunks(clock):
    fin, coord = make([OK], clock)
    assert await coord.metadata_received("rec", duration_ms=4000) is None
    await coord.chunk_sent("rec", 1, 2, OK)
    assert fin.calls == []
    outcome = await coord.chunk_sent("rec", 0, 2, OK)
    assert outcome is not None and outcome.ok
    assert len(fin.calls) == 1


@pytest.mark.asyncio
async def test_late_signals_after_success_do_not_refinalize(clock):
    fin, coord = make([OK], clock)
    await coord.chunk_sent("rec", 0, 1, OK)
    await coord.metadata_received("rec", duration_ms=1)
    await coord.chunk_sent("rec", 0, 1, OK)
    await coord.metadata_received("rec", duration_ms=1)
    assert await coord.try_finalize("rec") is None
    assert len(fin.calls) == 1


@pytest.mark.asyncio
async def test_unacknowledged_chunk_blocks_finalize(clock):
    fin, coord = make([OK], clock)
    await coord.metadata_received("rec", duration_ms=1)
    await coord.chunk_sent("rec", 0, 2, OK)
    await coord.chunk_sent("rec", 1, 2, SinkAck(ok=False, status=0))
    assert fin.calls == []


@pytest.mark.asyncio
async def test_transient_rejection_is_retried_with_backoff(clock):
    outcomes = []
    fin, coord = make([BUSY, BUSY, OK], clock, outcomes)
    await coord.chunk_sent("rec", 0, 1, OK)
    outcome = await coord.metadata_received("rec", duration_ms=1)

    assert outcome.ok
    assert outcome.attempts == 3
    assert len(fin.calls) == 3
    assert clock.sleeps == pytest.approx([0.6, 0.9])
    assert outcomes == [outcome]


@pytest.mark.asyncio
async def test_gives_up_after_three_retries(clock):
    outcomes = []
    fin, coord = make([BUSY], clock, outcomes)
    await coord.chunk_sent("rec", 0, 1, OK)
    outcome = await coord.metadata_received("rec", duration_ms=1)

    assert not outcome.ok
    assert len(fin.calls) == 4
    assert clock.sleeps == pytest.approx([0.6, 0.9, 1.2])
    assert isinstance(outcome.error, CompletionRejected)
    assert outcome.error.attempts == 4
    assert outcome.error.status == 409
    assert coord.pending("rec") is None
    assert outcomes == [outcome]


@pytest.mark.asyncio
async def test_reentrant_calls_during_retry_are_noops(clock):
    fin, coord = make([BUSY, OK], clock)
    reentrant = []

    async def sleep_and_poke(seconds):
        reentrant.append(await coord.try_finalize("rec"))
        reentrant.append(await coord.chunk_sent("rec", 0, 1, OK))
        await clock.sleep(seconds)

    coord._sleep = sleep_and_poke
    await coord.chunk_sent("rec", 0, 1, OK)
    outcome = await coord.metadata_received("rec", duration_ms=1)

    assert outcome.ok
    assert reentrant == [None, None]
    assert len(fin.calls) == 2


@pytest.mark.asyncio
async def test_finalizer_exception_counts_as_failed_attempt(clock):
    calls = []

    async def flaky(record):
        calls.append(record)
        if len(calls) == 1:
            raise ConnectionError("boom")
        return OK

    coord = CompletionCoordinator(flaky, sleep=clock.sleep)
    await coord.chunk_sent("rec", 0, 1, OK)
    outcome = await coord.metadata_received("rec", duration_ms=1)
    assert outcome.ok
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_rejected_chunk_ends_the_artifact(clock):
    outcomes = []
    fin, coord = make([OK], clock, outcomes)
    await coord.metadata_received("rec", duration_ms=1)
    await coord.chunk_sent("rec", 0, 2, OK)
    outcome = await coord.chunk_sent("rec", 1, 2, SinkAck(ok=False, status=400))

    assert not outcome.ok
    assert isinstance(outcome.error, ChunkRejected)
    assert outcome.error.index == 1
    assert outcome.error.status == 400
    assert coord.pending("rec") is None
    assert outcomes == [outcome]
    assert fin.calls == []

    assert await coord.chunk_sent("rec", 1, 2, OK) is None
    assert coord.pending("rec") is None


@pytest.mark.asyncio
async def test_finished_ids_are_bounded(clock):
    fin = FakeFinalizer([OK])
    coord = CompletionCoordinator(fin, sleep=clock.sleep, finished_memory=2)
    for name in ("a", "b", "c"):
        await coord.chunk_sent(name, 0, 1, OK)
        await coord.metadata_received(name, duration_ms=1)

    assert list(coord._finished) == ["b", "c"]
    assert len(fin.calls) == 3
