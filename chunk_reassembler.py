"""
chunk_reassembler.py

Buffers numbered slices of a large binary artifact (the session video) and
turns them back into one blob once every slot is filled.

- put_chunk() is idempotent per (artifact_id, index)
- a buffer's slot array is sized once; it may be resized only while empty
- finalize() concatenates in index order and drops the buffer
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from observe_env import setup_logger
from observe_models import DEFAULT_MIME
from pipeline_errors import ChunkStateError, InvalidChunkIndex, UnknownArtifact

logger = setup_logger("ChunkReassembler")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ArtifactBuffer:
    artifact_id: str
    total: int
    mime: str = DEFAULT_MIME
    created_at: int = 0
    slots: List[Optional[bytes]] = field(default_factory=list)

    def __post_init__(self):
        if not self.slots:
            self.slots = [None] * max(0, self.total)

    @property
    def filled(self) -> int:
        return sum(1 for s in self.slots if s is not None)

    def is_complete(self) -> bool:
        return self.total > 0 and len(self.slots) == self.total and all(s is not None for s in self.slots)

    def missing(self) -> List[int]:
        return [i for i, s in enumerate(self.slots) if s is None]


@dataclass(frozen=True)
class Artifact:
    artifact_id: str
    payload: bytes
    mime: str
    duration_ms: Optional[int]
    completed_at: int

    @property
    def size(self) -> int:
        return len(self.payload)

    def to_dict(self) -> Dict[str, object]:
        return {
            "artifact_id": self.artifact_id,
            "mime": self.mime,
            "duration_ms": self.duration_ms,
            "completed_at": self.completed_at,
            "size_bytes": self.size,
        }


class ChunkReassembler:
    def __init__(self, clock: Callable[[], int] = _now_ms):
        self._clock = clock
        self._buffers: Dict[str, ArtifactBuffer] = {}

    # -----------------------------
    # Chunks
    # -----------------------------
    def put_chunk(
        self,
        artifact_id: str,
        index: int,
        total: int,
        payload: bytes,
        mime: Optional[str] = None,
    ) -> Dict[str, int]:
        buf = self._buffers.get(artifact_id)

        if buf is None:
            if total <= 0 or not (0 <= index < total):
                raise InvalidChunkIndex(artifact_id, index, total)
            buf = ArtifactBuffer(
                artifact_id=artifact_id,
                total=total,
                mime=mime or DEFAULT_MIME,
                created_at=self._clock(),
            )
            self._buffers[artifact_id] = buf
            logger.debug(f"new buffer {artifact_id} total={total}")
        elif total != buf.total:
            if buf.filled > 0:
                raise ChunkStateError(
                    artifact_id,
                    f"total changed {buf.total} -> {total} after {buf.filled} slot(s) were filled",
                )
            buf.total = total
            buf.slots = [None] * max(0, total)

        if not (0 <= index < buf.total):
            raise InvalidChunkIndex(artifact_id, index, buf.total)

        buf.slots[index] = bytes(payload)
        if mime:
            buf.mime = mime
        return {"accepted": index}

    def is_complete(self, artifact_id: str) -> bool:
        buf = self._buffers.get(artifact_id)
        return bool(buf and buf.is_complete())

    def buffer(self, artifact_id: str) -> Optional[ArtifactBuffer]:
        return self._buffers.get(artifact_id)

    # -----------------------------
    # Finalize / abandon
    # -----------------------------
    def finalize(
        self,
        artifact_id: str,
        duration_ms: Optional[int] = None,
        mime: Optional[str] = None,
        completed_at: Optional[int] = None,
    ) -> Artifact:
        buf = self._buffers.get(artifact_id)
        if buf is None:
            raise UnknownArtifact(artifact_id)
        if not buf.is_complete():
            raise ChunkStateError(artifact_id, f"chunks_incomplete: missing {buf.missing()}")

        artifact = Artifact(
            artifact_id=artifact_id,
            payload=b"".join(buf.slots),  # type: ignore[arg-type]
            mime=mime or buf.mime,
            duration_ms=duration_ms,
            completed_at=completed_at if completed_at is not None else self._clock(),
        )
        del self._buffers[artifact_id]
        logger.info(f"finalized {artifact_id}: {artifact.size} bytes in {buf.total} chunk(s)")
        return artifact

    def discard(self, artifact_id: str) -> bool:
        return self._buffers.pop(artifact_id, None) is not None

    def abandon_stale(self, max_age_ms: int) -> List[str]:
        now = self._clock()
        stale = [aid for aid, b in self._buffers.items() if now - b.created_at > max_age_ms]
        for aid in stale:
            logger.warning(f"abandoning incomplete buffer {aid}")
            del self._buffers[aid]
        return stale

    def reset(self) -> None:
        self._buffers.clear()

    def __len__(self) -> int:
        return len(self._buffers)
