"""Tests for chunked artifact reassembly."""
from __future__ import annotations

import pytest

from chunk_reassembler import ChunkReassembler
from pipeline_errors import ChunkStateError, InvalidChunkIndex, UnknownArtifact


class TestChunkReassembler:
    def setup_method(self):
        self.now = 1_000
        self.r = ChunkReassembler(clock=lambda: self.now)

    def test_out_of_order_with_duplicates_reassembles_in_index_order(self):
        parts = [b"aa", b"bb", b"cc", b"dd"]
        for i in (2, 0, 3, 0, 2):
            assert self.r.put_chunk("rec", i, 4, parts[i], "video/webm") == {"accepted": i}
            assert not self.r.is_complete("rec")
        self.r.put_chunk("rec", 1, 4, parts[1])
        assert self.r.is_complete("rec")

        art = self.r.finalize("rec", duration_ms=1234, completed_at=5_000)
        assert art.payload == b"aabbccdd"
        assert art.mime == "video/webm"
        assert art.duration_ms == 1234
        assert art.completed_at == 5_000
        assert art.size == 8

    def test_finalize_discards_the_buffer(self):
        self.r.put_chunk("rec", 0, 1, b"x")
        self.r.finalize("rec")
        assert not self.r.is_complete("rec")
        with pytest.raises(UnknownArtifact):
            self.r.finalize("rec")

    def test_resend_overwrites_harmlessly(self):
        self.r.put_chunk("rec", 0, 2, b"old")
        self.r.put_chunk("rec", 0, 2, b"new")
        self.r.put_chunk("rec", 1, 2, b"!")
        assert self.r.finalize("rec").payload == b"new!"

    def test_index_out_of_range(self):
        with pytest.raises(InvalidChunkIndex):
            self.r.put_chunk("rec", 3, 3, b"x")
        self.r.put_chunk("rec", 0, 3, b"x")
        with pytest.raises(InvalidChunkIndex):
            self.r.put_chunk("rec", -1, 3, b"x")

    def test_total_change_after_fill_is_a_state_error(self):
        self.r.put_chunk("rec", 0, 3, b"x")
        with pytest.raises(ChunkStateError):
            self.r.put_chunk("rec", 1, 4, b"y")

    def test_unknown_artifact_is_never_complete(self):
        assert not self.r.is_complete("nope")
        with pytest.raises(UnknownArtifact):
            self.r.finalize("nope")

    def test_incomplete_finalize_is_refused(self):
        self.r.put_chunk("rec", 0, 2, b"x")
        with pytest.raises(ChunkStateError) as exc:
            self.r.finalize("rec")
        assert "chunks_incomplete" in str(exc.value)
        # still there for the missing chunk to arrive
        assert self.r.buffer("rec").missing() == [1]

    def test_abandon_stale(self):
        self.r.put_chunk("old", 0, 2, b"x")
        self.now = 60_000
        self.r.put_chunk("fresh", 0, 2, b"x")
        assert self.r.abandon_stale(max_age_ms=30_000) == ["old"]
        assert self.r.buffer("old") is None
        assert self.r.buffer("fresh") is not None
