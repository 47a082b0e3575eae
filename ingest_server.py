from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from fastapi import Body, FastAPI, HTTPException, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, Field

from observe_env import PipelineSettings, setup_logger
from observe_models import ChunkRecord, CompletionRecord, EventRecord, Rule, dump_steps
from pipeline_errors import ChunkStateError, InvalidChunkIndex, UnknownArtifact
from session_store import SessionStore

logger = setup_logger("IngestServer")


# ------------------------------------------------------------------------------
# Schemas
# ------------------------------------------------------------------------------
class IngestResponse(BaseModel):
    ok: bool = True
    accepted: int
    sessions: List[str] = Field(default_factory=list)


class CompleteResponse(BaseModel):
    ok: bool = True
    artifact_id: str
    size_bytes: int
    linked_session_id: Optional[str] = None
    overlap_ms: int = 0


class RuleRequest(BaseModel):
    name: Optional[str] = None
    use_cleaned: bool = False


def _rule_dict(rule: Rule) -> Dict[str, Any]:
    d = rule.model_dump(exclude={"steps"})
    d["steps"] = dump_steps(rule.steps)
    return d


# ------------------------------------------------------------------------------
# FastAPI app
# ------------------------------------------------------------------------------
def create_app(store: Optional[SessionStore] = None) -> FastAPI:
    store = store or SessionStore(PipelineSettings.from_env())

    app = FastAPI(
        title="Observe Ingest (events + recordings + rules)",
        version="1.0",
        default_response_class=ORJSONResponse,
    )
    app.state.store = store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ------------------------------
    # Health
    # ------------------------------
    @app.get("/healthz")
    async def healthz():
        return {"status": "ok", **store.stats()}

    # ------------------------------
    # Events
    # ------------------------------
    @app.post("/events", response_model=IngestResponse)
    async def ingest_events(payload: Union[List[EventRecord], EventRecord] = Body(...)):
        records = payload if isinstance(payload, list) else [payload]
        touched: List[str] = []
        for rec in records:
            sid = store.ingest(rec)
            if sid and sid not in touched:
                touched.append(sid)
        return IngestResponse(accepted=len(records), sessions=touched)

    @app.get("/events/recent")
    async def recent_events(limit: int = 200):
        return store.recent_records(limit=max(1, min(limit, 1000)))

    # ------------------------------
    # Recordings
    # ------------------------------
    @app.post("/recordings/chunks")
    async def put_chunk(chunk: ChunkRecord):
        try:
            return store.put_chunk(chunk)
        except InvalidChunkIndex as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        except ChunkStateError as e:
            raise HTTPException(status_code=409, detail=str(e)) from e

    @app.post("/recordings/complete", response_model=CompleteResponse)
    async def complete_recording(rec: CompletionRecord):
        try:
            stored = store.complete(rec)
        except UnknownArtifact as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        except ChunkStateError as e:
            logger.warning(f"completion refused: {e}")
            raise HTTPException(status_code=409, detail="chunks_incomplete") from e
        return CompleteResponse(
            artifact_id=stored.artifact.artifact_id,
            size_bytes=stored.artifact.size,
            linked_session_id=stored.linked_session_id,
            overlap_ms=stored.overlap_ms,
        )

    @app.get("/recordings")
    async def list_recordings():
        return store.list_recordings()

    @app.get("/recordings/{artifact_id}")
    async def get_recording(artifact_id: str):
        rec = store.get_recording(artifact_id)
        if rec is None:
            raise HTTPException(status_code=404, detail=f"unknown recording: {artifact_id}")
        return Response(content=rec.artifact.payload, media_type=rec.artifact.mime)

    # ------------------------------
    # Sessions
    # ------------------------------
    @app.get("/sessions")
    async def list_sessions():
        return store.list_sessions()

    # registered before /sessions/{session_id} routes so "cleanup" is not taken as an id
    @app.post("/sessions/cleanup")
    async def cleanup_sessions(ttl_h: Optional[float] = None):
        return {"ok": True, "cleaned_count": store.cleanup(ttl_h)}

    @app.get("/sessions/{session_id}")
    async def get_session(session_id: str):
        sess = store.get_session(session_id)
        if sess is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return sess.to_dict()

    @app.post("/sessions/{session_id}/prune")
    async def prune_session(session_id: str):
        sess = store.prune(session_id)
        if sess is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return {"ok": True, "kept": len(sess.cleaned_events or []), "original": len(sess.events)}

    @app.post("/sessions/{session_id}/rule")
    async def rule_from_session(session_id: str, req: Optional[RuleRequest] = None):
        req = req or RuleRequest()
        rule = store.rule_from_session(session_id, name=req.name, use_cleaned=req.use_cleaned)
        if rule is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return _rule_dict(rule)

    # ------------------------------
    # Rules
    # ------------------------------
    @app.post("/rules")
    async def save_rule(rule: Rule):
        return {"ok": True, "rule": _rule_dict(store.save_rule(rule))}

    @app.get("/rules")
    async def list_rules():
        return [_rule_dict(r) for r in store.list_rules()]

    @app.post("/clear")
    async def clear():
        store.clear()
        return {"ok": True}

    return app


app = create_app()


def main():
    import uvicorn

    settings = PipelineSettings.from_env()
    uvicorn.run(
        "ingest_server:app",
        host="0.0.0.0",
        port=settings.port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
