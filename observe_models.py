"""
observe_models.py

Pydantic models for everything that crosses a boundary in the pipeline:
captured events, sink records, derived steps and rules.

Events and steps are tagged unions keyed on `type`, each variant declaring its
own optional fields instead of an untyped payload dict.
"""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from capture_filters import make_fingerprint

# =============================================================================
# Literals
# =============================================================================

EventType = Literal["navigate", "click", "input", "submit", "key", "scroll"]
RecordType = Literal[
    "browser_event",
    "recording_control",
    "tab_monitored",
    "tab_closed",
    "extension_connected",
]

DEFAULT_MIME = "video/webm"


# =============================================================================
# Target descriptor
# =============================================================================

class TargetDescriptor(BaseModel):
    """What the instrumentation could tell about the element an action hit."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    role: Optional[str] = Field(None, description="ARIA role or role implied by the tag")
    name: Optional[str] = Field(None, description="Accessible name: aria-label, placeholder or text")
    selector: Optional[str] = Field(None, description="Raw structural selector as captured")
    tag: Optional[str] = None

    @field_validator("role", "tag")
    @classmethod
    def _lower(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip().lower()
        return v or None


# =============================================================================
# Events (immutable once recorded)
# =============================================================================

class _EventBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    timestamp: int = Field(..., ge=0, description="ms since epoch")
    session_id: Optional[str] = None
    url: str = ""
    fingerprint: str = ""

    @model_validator(mode="before")
    @classmethod
    def _derive_fingerprint(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("fingerprint"):
            data = dict(data)
            event_type = data.get("type")
            if not event_type:
                type_field = cls.model_fields.get("type")
                event_type = type_field.default if type_field is not None else ""
            data["fingerprint"] = make_fingerprint(
                str(event_type or ""),
                int(data.get("timestamp") or 0),
                str(data.get("url") or ""),
            )
        return data


class NavigateEvent(_EventBase):
    type: Literal["navigate"] = "navigate"
    title: Optional[str] = None


class ClickEvent(_EventBase):
    type: Literal["click"] = "click"
    target: TargetDescriptor = Field(default_factory=TargetDescriptor)


class InputEvent(_EventBase):
    type: Literal["input"] = "input"
    target: TargetDescriptor = Field(default_factory=TargetDescriptor)
    value: Optional[str] = None
    redacted: bool = False


class SubmitEvent(_EventBase):
    type: Literal["submit"] = "submit"
    target: Optional[TargetDescriptor] = None


class KeyEvent(_EventBase):
    type: Literal["key"] = "key"
    key: str = ""
    code: str = ""
    ctrl_key: bool = False
    alt_key: bool = False
    shift_key: bool = False
    meta_key: bool = False


class ScrollEvent(_EventBase):
    type: Literal["scroll"] = "scroll"
    target: Optional[TargetDescriptor] = None
    scroll_x: int = 0
    scroll_y: int = 0


Event = Annotated[
    Union[NavigateEvent, ClickEvent, InputEvent, SubmitEvent, KeyEvent, ScrollEvent],
    Field(discriminator="type"),
]

_EVENT_ADAPTER: TypeAdapter = TypeAdapter(Event)
_EVENT_LIST_ADAPTER: TypeAdapter = TypeAdapter(List[Event])


def parse_event(data: Dict[str, Any]) -> Event:
    return _EVENT_ADAPTER.validate_python(data)


def parse_events(data: List[Dict[str, Any]]) -> List[Event]:
    return _EVENT_LIST_ADAPTER.validate_python(data)


# =============================================================================
# Sink records
# =============================================================================

class EventRecord(BaseModel):
    """One record on the ingestion path: `{type, source_id, session_id, url, event, timestamp}`."""

    model_config = ConfigDict(extra="ignore")

    type: RecordType = "browser_event"
    source_id: Optional[str] = None
    session_id: Optional[str] = None
    url: str = ""
    title: Optional[str] = None
    event: Optional[Event] = None
    timestamp: int = Field(..., ge=0)
    recording_start_timestamp: Optional[int] = None
    action: Optional[str] = Field(None, description="recording_control only: start_recording | stop_recording")


class ChunkRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    artifact_id: str = Field(..., min_length=1)
    index: int
    total: int
    payload: str = Field(..., description="base64-encoded slice of the artifact")
    mime: str = DEFAULT_MIME
    timestamp: Optional[int] = None


class CompletionRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    artifact_id: str = Field(..., min_length=1)
    duration: Optional[int] = Field(None, description="ms")
    mime: Optional[str] = None
    completed_at: Optional[int] = Field(None, description="ms since epoch")
    size: Optional[int] = None


class SinkAck(BaseModel):
    ok: bool
    status: int = 0
    body: Dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Steps / rules
# =============================================================================

class NavigateStep(BaseModel):
    model_config = ConfigDict(frozen=True)
    type: Literal["navigate"] = "navigate"
    url: str


class ClickStep(BaseModel):
    model_config = ConfigDict(frozen=True)
    type: Literal["click"] = "click"
    selector: str
    name: Optional[str] = None


class InputStep(BaseModel):
    model_config = ConfigDict(frozen=True)
    type: Literal["input"] = "input"
    selector: str
    value: str = ""


class SubmitStep(BaseModel):
    model_config = ConfigDict(frozen=True)
    type: Literal["submit"] = "submit"
    selector: Optional[str] = None
    name: Optional[str] = None


class WaitStep(BaseModel):
    model_config = ConfigDict(frozen=True)
    type: Literal["wait"] = "wait"
    ms: int = Field(..., ge=0)


class OpenTabStep(BaseModel):
    model_config = ConfigDict(frozen=True)
    type: Literal["openTab"] = "openTab"
    url: str


Step = Annotated[
    Union[NavigateStep, ClickStep, InputStep, SubmitStep, WaitStep, OpenTabStep],
    Field(discriminator="type"),
]

_STEP_LIST_ADAPTER: TypeAdapter = TypeAdapter(List[Step])


def parse_steps(data: List[Dict[str, Any]]) -> List[Step]:
    return _STEP_LIST_ADAPTER.validate_python(data)


def dump_steps(steps: List[Step]) -> List[Dict[str, Any]]:
    return [s.model_dump(exclude_none=True) for s in steps]


class Rule(BaseModel):
    name: str = Field(..., min_length=1)
    source_session_id: Optional[str] = None
    steps: List[Step] = Field(default_factory=list)
    rule_id: Optional[str] = None
    created_at: Optional[int] = None
