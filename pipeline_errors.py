"""
Error taxonomy for the capture / upload / replay pipeline.

Reassembly and completion errors are local: callers log them and drop the
offending artifact. Replay errors abort the current run only and are reported
with the failing step index.
"""

from __future__ import annotations

from typing import Optional


# Replay result error types (string tags, like the orchestrator step results)
ERROR_NOT_FOUND = "not_found"
ERROR_NO_FORM = "no_form"
ERROR_NAVIGATION = "navigation_error"
ERROR_UNKNOWN = "unknown_error"


class ObservePipelineError(Exception):
    """Base class for every pipeline error."""


# -----------------------------
# Reassembly
# -----------------------------
class InvalidChunkIndex(ObservePipelineError):
    def __init__(self, artifact_id: str, index: int, total: int):
        self.artifact_id = artifact_id
        self.index = index
        self.total = total
        super().__init__(f"chunk index {index} outside [0, {total}) for artifact {artifact_id}")


class UnknownArtifact(ObservePipelineError):
    def __init__(self, artifact_id: str):
        self.artifact_id = artifact_id
        super().__init__(f"unknown artifact: {artifact_id}")


class ChunkStateError(ObservePipelineError):
    def __init__(self, artifact_id: str, message: str):
        self.artifact_id = artifact_id
        super().__init__(f"{artifact_id}: {message}")


# -----------------------------
# Completion
# -----------------------------
class CompletionRejected(ObservePipelineError):
    def __init__(self, artifact_id: str, attempts: int, status: Optional[int] = None):
        self.artifact_id = artifact_id
        self.attempts = attempts
        self.status = status
        super().__init__(
            f"completion for {artifact_id} rejected after {attempts} attempt(s)"
            + (f" (last status {status})" if status is not None else "")
        )


class ChunkRejected(ObservePipelineError):
    def __init__(self, artifact_id: str, index: int, status: int):
        self.artifact_id = artifact_id
        self.index = index
        self.status = status
        super().__init__(f"chunk {index} of {artifact_id} rejected (status {status})")


# -----------------------------
# Replay
# -----------------------------
class ReplayStepError(ObservePipelineError):
    error_type = ERROR_UNKNOWN


class TargetNotFound(ReplayStepError):
    error_type = ERROR_NOT_FOUND

    def __init__(self, target_ref: str, timeout_ms: int):
        self.target_ref = target_ref
        self.timeout_ms = timeout_ms
        super().__init__(f"selector not found: {target_ref} (waited {timeout_ms}ms)")


class NoFormFound(ReplayStepError):
    error_type = ERROR_NO_FORM

    def __init__(self):
        super().__init__("no form to submit")
