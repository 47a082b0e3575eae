"""HTTP-level tests for the ingest server."""
from __future__ import annotations

import base64

from fastapi.testclient import TestClient

from ingest_server import create_app
from observe_env import PipelineSettings
from observe_models import ChunkRecord
from session_store import SessionStore

URL = "https://example.com/contact"


def browser_event(session_id, ts, ev_type="click", **ev):
    return {
        "type": "browser_event",
        "source_id": "tab_1",
        "session_id": session_id,
        "url": URL,
        "timestamp": ts,
        "event": {"type": ev_type, "timestamp": ts, "url": URL, **ev},
    }


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class TestIngestServer:
    def setup_method(self):
        self.store = SessionStore(PipelineSettings())
        self.client = TestClient(create_app(self.store))

    def _seed_session(self, session_id="session_1"):
        batch = [
            browser_event(session_id, 1000, "navigate"),
            browser_event(session_id, 1500, "input", target={"selector": "#email", "role": "textbox"}, value="me@x.io"),
            browser_event(session_id, 2000, "click", target={"selector": "button", "role": "button", "name": "Send"}),
            browser_event(session_id, 2500, "submit"),
        ]
        r = self.client.post("/events", json=batch)
        assert r.status_code == 200
        return r.json()

    def test_healthz(self):
        r = self.client.get("/healthz")
        assert r.status_code == 200
        assert r.json()["status"] == "ok"

    def test_events_single_and_batch(self):
        body = self._seed_session()
        assert body == {"ok": True, "accepted": 4, "sessions": ["session_1"]}

        r = self.client.post("/events", json={"type": "tab_monitored", "source_id": "tab_2", "timestamp": 3000})
        assert r.json()["accepted"] == 1
        assert r.json()["sessions"] == []

        recent = self.client.get("/events/recent", params={"limit": 2}).json()
        assert len(recent) == 2
        assert recent[-1]["type"] == "tab_monitored"

    def test_invalid_event_is_422(self):
        r = self.client.post("/events", json={"type": "browser_event", "timestamp": 1, "event": {"type": "hover", "timestamp": 1}})
        assert r.status_code == 422

    def test_sessions(self):
        self._seed_session()
        sessions = self.client.get("/sessions").json()
        assert [s["session_id"] for s in sessions] == ["session_1"]
        assert sessions[0]["event_count"] == 4

        detail = self.client.get("/sessions/session_1").json()
        assert [e["type"] for e in detail["events"]] == ["navigate", "input", "click", "submit"]
        assert self.client.get("/sessions/nope").status_code == 404

    def test_temp_session_merges_into_nearby_global_session(self):
        self._seed_session()
        r = self.client.post("/events", json=browser_event("temp_abc", 4000, "click", target={"selector": "#more"}))
        assert r.json()["sessions"] == ["session_1"]
        assert self.client.get("/sessions/session_1").json()["event_count"] == 5
        assert self.client.get("/sessions/temp_abc").status_code == 404

    def test_recording_upload_links_to_session(self):
        self._seed_session()
        data = b"fake-webm-payload"
        parts = [data[:6], data[6:12], data[12:]]
        for i in (2, 0, 1):
            r = self.client.post("/recordings/chunks", json={
                "artifact_id": "rec_1", "index": i, "total": 3, "payload": b64(parts[i]),
            })
            assert r.status_code == 200
            assert r.json() == {"received": i}

        r = self.client.post("/recordings/complete", json={
            "artifact_id": "rec_1", "duration": 1500, "completed_at": 2600, "mime": "video/webm",
        })
        assert r.status_code == 200
        body = r.json()
        assert body["size_bytes"] == len(data)
        assert body["linked_session_id"] == "session_1"
        assert body["overlap_ms"] > 500

        listing = self.client.get("/recordings").json()
        assert listing[0]["artifact_id"] == "rec_1"
        got = self.client.get("/recordings/rec_1")
        assert got.content == data
        assert got.headers["content-type"].startswith("video/webm")
        assert self.client.get("/sessions/session_1").json()["recording_id"] == "rec_1"

    def test_recording_errors(self):
        r = self.client.post("/recordings/chunks", json={"artifact_id": "rec", "index": 5, "total": 2, "payload": b64(b"x")})
        assert r.status_code == 400

        self.client.post("/recordings/chunks", json={"artifact_id": "rec", "index": 0, "total": 2, "payload": b64(b"x")})
        r = self.client.post("/recordings/chunks", json={"artifact_id": "rec", "index": 1, "total": 3, "payload": b64(b"y")})
        assert r.status_code == 409

        r = self.client.post("/recordings/complete", json={"artifact_id": "rec"})
        assert r.status_code == 409
        assert r.json()["detail"] == "chunks_incomplete"

        r = self.client.post("/recordings/complete", json={"artifact_id": "missing"})
        assert r.status_code == 404

        r = self.client.post("/recordings/chunks", json={"artifact_id": "b", "index": 0, "total": 1, "payload": "%%%"})
        assert r.status_code == 409

        assert self.client.get("/recordings/missing").status_code == 404

    def test_prune_and_rule_from_session(self):
        self._seed_session()
        r = self.client.post("/sessions/session_1/prune")
        assert r.json() == {"ok": True, "kept": 4, "original": 4}

        rule = self.client.post("/sessions/session_1/rule", json={"name": "contact", "use_cleaned": True}).json()
        assert rule["name"] == "contact"
        assert rule["source_session_id"] == "session_1"
        assert [s["type"] for s in rule["steps"]] == ["navigate", "click", "input", "submit"]
        assert rule["steps"][1]["selector"] == 'button[name="Send"]'

        default = self.client.post("/sessions/session_1/rule").json()
        assert default["name"] == "session_1"

        assert len(self.client.get("/rules").json()) == 2
        assert self.client.post("/sessions/nope/rule").status_code == 404
        assert self.client.post("/sessions/nope/prune").status_code == 404

    def test_save_rule(self):
        r = self.client.post("/rules", json={"name": "manual", "steps": [{"type": "wait", "ms": 10}]})
        body = r.json()
        assert body["ok"] is True
        assert body["rule"]["rule_id"]
        assert body["rule"]["steps"] == [{"type": "wait", "ms": 10}]

        assert self.client.post("/rules", json={"name": "", "steps": []}).status_code == 422

    def test_cleanup_and_clear(self):
        self._seed_session()
        r = self.client.post("/sessions/cleanup", params={"ttl_h": 0})
        assert r.json() == {"ok": True, "cleaned_count": 1}
        assert self.client.get("/sessions").json() == []

        self._seed_session()
        assert self.client.post("/clear").json() == {"ok": True}
        health = self.client.get("/healthz").json()
        assert health["sessions"] == 0
        assert health["records"] == 0


class TestStaleUploads:
    def setup_method(self):
        self.now = 10_000
        self.store = SessionStore(PipelineSettings(artifact_max_age_ms=1000), clock=lambda: self.now)

    def _chunk(self, artifact_id, index=0, total=2):
        return ChunkRecord(artifact_id=artifact_id, index=index, total=total, payload=b64(b"x"))

    def test_next_chunk_drops_abandoned_uploads(self):
        self.store.put_chunk(self._chunk("rec_old"))
        self.now += 1001
        self.store.put_chunk(self._chunk("rec_new"))
        assert self.store.reassembler.buffer("rec_old") is None
        assert self.store.reassembler.buffer("rec_new") is not None

    def test_upload_within_max_age_survives(self):
        self.store.put_chunk(self._chunk("rec_1"))
        self.now += 1000
        self.store.put_chunk(self._chunk("rec_1", index=1))
        assert self.store.reassembler.is_complete("rec_1")

    def test_cleanup_drops_abandoned_uploads(self):
        self.store.put_chunk(self._chunk("rec_old"))
        self.now += 5000
        client = TestClient(create_app(self.store))
        r = client.post("/sessions/cleanup")
        assert r.json() == {"ok": True, "cleaned_count": 0}
        assert len(self.store.reassembler) == 0
