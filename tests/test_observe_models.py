"""Tests for the event / step unions and sink records."""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from observe_models import (
    ClickEvent,
    EventRecord,
    InputEvent,
    NavigateStep,
    Rule,
    SubmitStep,
    TargetDescriptor,
    WaitStep,
    dump_steps,
    parse_event,
    parse_events,
    parse_steps,
)


class TestEvents:
    def test_union_dispatches_on_type(self):
        evs = parse_events([
            {"type": "navigate", "timestamp": 1, "url": "https://a.test/", "title": "A"},
            {"type": "click", "timestamp": 2, "url": "https://a.test/", "target": {"role": "Button", "name": "Go"}},
            {"type": "input", "timestamp": 3, "target": {"selector": "#q"}, "value": "hi"},
        ])
        assert [e.type for e in evs] == ["navigate", "click", "input"]
        assert isinstance(evs[1], ClickEvent)
        assert evs[1].target.role == "button"
        assert isinstance(evs[2], InputEvent)
        assert evs[2].value == "hi"

    def test_unknown_type_is_rejected(self):
        with pytest.raises(ValidationError):
            parse_event({"type": "hover", "timestamp": 1})

    def test_negative_timestamp_is_rejected(self):
        with pytest.raises(ValidationError):
            parse_event({"type": "click", "timestamp": -1})

    def test_fingerprint_is_derived_when_missing(self):
        ev = parse_event({"type": "click", "timestamp": 1399, "url": "u"})
        assert ev.fingerprint == "click|6|u"
        direct = ClickEvent(timestamp=1399, url="u")
        assert direct.fingerprint == "click|6|u"

    def test_explicit_fingerprint_is_kept(self):
        ev = parse_event({"type": "click", "timestamp": 1, "fingerprint": "mine"})
        assert ev.fingerprint == "mine"

    def test_events_are_immutable(self):
        ev = parse_event({"type": "click", "timestamp": 1})
        with pytest.raises(ValidationError):
            ev.timestamp = 2

    def test_target_lowercases_role_and_tag(self):
        t = TargetDescriptor(role=" TextBox ", tag="INPUT")
        assert t.role == "textbox"
        assert t.tag == "input"


class TestRecords:
    def test_browser_event_record_embeds_an_event(self):
        rec = EventRecord.model_validate({
            "type": "browser_event",
            "source_id": "tab_1",
            "session_id": "session_1",
            "timestamp": 10,
            "event": {"type": "submit", "timestamp": 10},
        })
        assert rec.event.type == "submit"

    def test_control_record_without_event(self):
        rec = EventRecord.model_validate({"type": "recording_control", "timestamp": 5, "action": "start_recording"})
        assert rec.event is None
        assert rec.action == "start_recording"


class TestSteps:
    def test_parse_and_dump(self):
        steps = parse_steps([
            {"type": "navigate", "url": "https://a.test/"},
            {"type": "wait", "ms": 100},
            {"type": "submit"},
            {"type": "openTab", "url": "https://b.test/"},
        ])
        assert isinstance(steps[0], NavigateStep)
        assert isinstance(steps[1], WaitStep)
        assert isinstance(steps[2], SubmitStep)
        dumped = dump_steps(steps)
        assert dumped[2] == {"type": "submit"}
        assert dumped[3] == {"type": "openTab", "url": "https://b.test/"}

    def test_wait_must_be_non_negative(self):
        with pytest.raises(ValidationError):
            parse_steps([{"type": "wait", "ms": -5}])

    def test_rule_requires_a_name(self):
        with pytest.raises(ValidationError):
            Rule(name="", steps=[])
