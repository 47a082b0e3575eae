"""Tests for linking recordings to sessions by time overlap."""
from __future__ import annotations

from session_correlator import SessionArtifactCorrelator, SessionWindow, overlap_ms


def test_overlap_ms():
    assert overlap_ms((0, 10), (5, 20)) == 5
    assert overlap_ms((0, 10), (10, 20)) == 0
    assert overlap_ms((0, 10), (30, 40)) == 0


class TestSessionArtifactCorrelator:
    def setup_method(self):
        self.c = SessionArtifactCorrelator()
        self.sessions = [
            SessionWindow("session_a", start_time=0, last_event_time=1000),
            SessionWindow("session_b", start_time=5000, last_event_time=6000),
        ]

    def test_links_to_the_session_covering_the_recording(self):
        corr = self.c.correlate(completed_at=1200, duration_ms=300, sessions=self.sessions)
        assert corr.linked
        assert corr.session_id == "session_a"
        assert corr.overlap_ms > 500

    def test_recording_far_from_any_session_stays_unlinked(self):
        corr = self.c.correlate(completed_at=60_000, duration_ms=1000, sessions=self.sessions)
        assert not corr.linked
        assert corr.overlap_ms == 0

    def test_session_that_already_has_a_recording_is_skipped(self):
        sessions = [
            SessionWindow("session_a", start_time=0, last_event_time=1000, recording_id="rec_old"),
            SessionWindow("session_b", start_time=5000, last_event_time=6000),
        ]
        corr = self.c.correlate(completed_at=1200, duration_ms=300, sessions=sessions)
        assert not corr.linked

    def test_largest_overlap_wins(self):
        sessions = [
            SessionWindow("short", start_time=9000, last_event_time=9100),
            SessionWindow("long", start_time=2000, last_event_time=9500),
        ]
        corr = SessionArtifactCorrelator(grace_ms=0).correlate(10_000, 8000, sessions)
        assert corr.session_id == "long"

    def test_missing_duration_uses_fallback(self):
        c = SessionArtifactCorrelator(grace_ms=0)
        assert c.artifact_window(10_000, None) == (2000, 10_000)
        assert c.artifact_window(10_000, 0) == (2000, 10_000)
        corr = c.correlate(10_000, None, [SessionWindow("s", start_time=0, last_event_time=3000)])
        assert corr.session_id == "s"
        assert corr.overlap_ms == 1000

    def test_overlap_must_exceed_the_threshold(self):
        c = SessionArtifactCorrelator(grace_ms=0)
        sessions = [SessionWindow("s", start_time=0, last_event_time=1000)]
        # artifact [400, 1400] overlaps 600ms
        assert c.correlate(1400, 1000, sessions).linked
        # artifact [500, 1500] overlaps exactly 500ms
        corr = c.correlate(1500, 1000, sessions)
        assert not corr.linked
        assert corr.overlap_ms == 500

    def test_windows_are_clamped_at_zero(self):
        assert self.c.artifact_window(100, 50) == (0, 1600)
        assert self.c.session_window(SessionWindow("s", start_time=200)) == (0, 1700)
