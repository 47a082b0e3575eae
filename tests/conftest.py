"""Shared pytest fixtures: a fake clock and an in-memory document for the replay engine."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pytest

from replay_engine import ElementInfo


class FakeClock:
    """Monotonic seconds that only move when someone sleeps."""

    def __init__(self, start: float = 0.0):
        self.t = start
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self.t

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.t += seconds


@dataclass
class FakeForm:
    form_id: str = "form"
    submitted: int = 0


@dataclass
class FakeElement:
    tag: str
    id: str = ""
    classes: List[str] = field(default_factory=list)
    role: str = ""
    type: str = ""
    text: str = ""
    aria_label: str = ""
    placeholder: str = ""
    attrs: Dict[str, str] = field(default_factory=dict)
    visible: bool = True
    form: Optional[FakeForm] = None
    value: str = ""
    fired: List[str] = field(default_factory=list)
    clicks: int = 0

    def accessible_text(self) -> str:
        return self.text or self.aria_label or self.placeholder


_CSS = re.compile(
    r'^(?P<tag>[a-z][a-z0-9-]*)?(?P<id>#[\w-]+)?(?P<cls>(?:\.[\w-]+)*)'
    r'(?:\[(?P<attr>[\w-]+)="(?P<val>[^"]*)"\])?$',
    re.IGNORECASE,
)


class FakeDocument:
    """Implements the ReplayDocument protocol over a flat list of FakeElements."""

    def __init__(self, url: str = "https://example.com/form", elements: Optional[List[FakeElement]] = None,
                 forms: Optional[List[FakeForm]] = None):
        self.url = url
        self.elements: List[FakeElement] = list(elements or [])
        self.forms: List[FakeForm] = list(forms or [])
        self.active: Optional[FakeElement] = None
        self.opened_tabs: List[str] = []
        self.scheduled: List[tuple] = []

    async def current_url(self) -> str:
        return self.url

    async def get_by_id(self, element_id: str) -> Optional[FakeElement]:
        return next((e for e in self.elements if e.id and e.id == element_id), None)

    async def visible_elements(self) -> List[ElementInfo]:
        return [
            ElementInfo(handle=e, tag=e.tag, role=e.role, type=e.type, text=e.accessible_text(), visible=True)
            for e in self.elements
            if e.visible
        ]

    async def query_selector(self, selector: str) -> Optional[FakeElement]:
        m = _CSS.match(selector.strip())
        if not m or not selector.strip():
            return None
        tag, el_id, cls, attr, val = m.group("tag"), m.group("id"), m.group("cls"), m.group("attr"), m.group("val")
        wanted = [c for c in (cls or "").split(".") if c]
        for e in self.elements:
            if tag and e.tag != tag.lower():
                continue
            if el_id and e.id != el_id[1:]:
                continue
            if any(c not in e.classes for c in wanted):
                continue
            if attr and e.attrs.get(attr) != val:
                continue
            return e
        return None

    async def click(self, handle: FakeElement) -> None:
        handle.clicks += 1
        self.active = handle
        if handle.form is not None and (handle.type == "submit" or handle.tag == "button"):
            handle.form.submitted += 1

    async def set_value(self, handle: FakeElement, value: str) -> None:
        self.active = handle
        handle.value = value
        handle.fired.extend(["input", "change"])

    async def submit_form(self, handle: FakeElement) -> bool:
        # a FakeElement(tag="form") carries its own FakeForm in `form`
        if handle.form is None:
            return False
        handle.form.submitted += 1
        return True

    async def submit_form_of_active_element(self) -> bool:
        form = (self.active.form if self.active is not None else None) or (self.forms[0] if self.forms else None)
        if form is None:
            return False
        form.submitted += 1
        return True

    async def open_tab(self, url: str) -> None:
        self.opened_tabs.append(url)

    async def schedule_navigation(self, url: str, delay_ms: int) -> None:
        self.scheduled.append((url, delay_ms))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def contact_page() -> FakeDocument:
    """A small contact form: email field with an id, a placeholder-only textarea, a Send button."""
    form = FakeForm("contact")
    return FakeDocument(
        url="https://example.com/contact",
        elements=[
            FakeElement(tag="h1", text="Contact us"),
            FakeElement(tag="input", id="email", type="email", form=form),
            FakeElement(tag="textarea", placeholder="Message body", form=form),
            FakeElement(tag="button", text="Send", form=form),
        ],
        forms=[form],
    )


def element(doc: FakeDocument, **match: Any) -> FakeElement:
    for e in doc.elements:
        if all(getattr(e, k) == v for k, v in match.items()):
            return e
    raise LookupError(match)
