"""
Replay engine: runs a derived rule against a live document, one step at a time.

Target references are resolved through a fixed ladder (id, role+name among
visible elements, bare role, raw CSS, bare tag), each rung retried by polling
until a deadline. The document itself sits behind `ReplayDocument` so the
ladder is plain Python; playwright_document.PlaywrightDocument is the live one.
"""

from __future__ import annotations

import asyncio
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, TypeVar
from urllib.parse import urljoin, urlsplit

from observe_env import PipelineSettings, setup_logger
from observe_models import (
    ClickStep,
    InputStep,
    NavigateStep,
    OpenTabStep,
    Step,
    SubmitStep,
    WaitStep,
)
from pipeline_errors import ERROR_UNKNOWN, NoFormFound, ReplayStepError, TargetNotFound

logger = setup_logger("ReplayEngine")

T = TypeVar("T")

# Post-action settle delays (ms)
OPEN_TAB_SETTLE_MS = 150
NAVIGATE_DELAY_MS = 50
CLICK_SETTLE_MS = 200
INPUT_SETTLE_MS = 100
SUBMIT_SETTLE_MS = 250


# =============================================================================
# Document abstraction
# =============================================================================
@dataclass
class ElementInfo:
    """Snapshot of one element, enough to match it by role and accessible name."""

    handle: Any
    tag: str
    role: str = ""
    type: str = ""
    text: str = ""
    visible: bool = True


class ReplayDocument(Protocol):
    async def current_url(self) -> str: ...

    async def get_by_id(self, element_id: str) -> Optional[Any]: ...

    async def visible_elements(self) -> List[ElementInfo]: ...

    async def query_selector(self, selector: str) -> Optional[Any]: ...

    async def click(self, handle: Any) -> None: ...

    async def set_value(self, handle: Any, value: str) -> None:
        """Assign through the native value setter, then fire `input` and `change`."""
        ...

    async def submit_form(self, handle: Any) -> bool:
        """requestSubmit() on `handle` if it is a form, else on its closest form; False if none."""
        ...

    async def submit_form_of_active_element(self) -> bool:
        """requestSubmit() on the focused element's form or the first form; False if none."""
        ...

    async def open_tab(self, url: str) -> None: ...

    async def schedule_navigation(self, url: str, delay_ms: int) -> None: ...


# =============================================================================
# Helpers
# =============================================================================
async def poll_until(
    attempt: Callable[[], Awaitable[Optional[T]]],
    timeout_ms: int,
    interval_ms: int,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Optional[T]:
    """Call `attempt` until it returns something or the deadline passes."""
    deadline = clock() + timeout_ms / 1000.0
    found = await attempt()
    while found is None and clock() < deadline:
        await sleep(interval_ms / 1000.0)
        found = await attempt()
    return found


def same_document_url(a: str, b: str) -> bool:
    """Same origin + path + query; the fragment is ignored."""
    pa, pb = urlsplit(a or ""), urlsplit(b or "")
    return (
        pa.scheme.lower() == pb.scheme.lower()
        and pa.netloc.lower() == pb.netloc.lower()
        and (pa.path or "/") == (pb.path or "/")
        and pa.query == pb.query
    )


ROLE_NAME_REF = re.compile(r'^([a-z]+)\[name="(.+)"\]$', re.IGNORECASE)
BARE_TOKEN = re.compile(r"^[a-z][a-z0-9-]*$", re.IGNORECASE)
KNOWN_ROLES = {"button", "link", "textbox", "combobox", "checkbox", "radio", "tab", "menuitem", "option"}
TEXT_INPUT_TYPES = {"", "text", "email", "search", "tel", "url", "password", "number"}
BUTTON_INPUT_TYPES = {"button", "submit", "reset"}


def unescape_name(name: str) -> str:
    """Undo the backslash escaping stable selectors apply to `"` and `\\` in names."""
    return re.sub(r"\\(.)", r"\1", name)


def role_matches(el: ElementInfo, role: str) -> bool:
    aria = (el.role or "").lower()
    tag = (el.tag or "").lower()
    itype = (el.type or "").lower()
    role = role.lower()
    return (
        aria == role
        or (role == "button" and (tag == "button" or (tag == "input" and itype in BUTTON_INPUT_TYPES)))
        or (role == "link" and tag == "a")
        or (role == "textbox" and (tag == "textarea" or (tag == "input" and itype in TEXT_INPUT_TYPES)))
        or (role in ("checkbox", "radio") and tag == "input" and itype == role)
        or (role == "combobox" and tag == "select")
    )


def _truncate(s: Optional[str], n: int = 60) -> str:
    if not s:
        return ""
    return s[:n] + "…" if len(s) > n else s


def new_runner_episode_id(url: str = "") -> str:
    host = urlsplit(url).hostname or "local"
    iso = datetime.now(timezone.utc).isoformat()[:19]
    return f"runner:{host}:{iso}:{uuid.uuid4().hex[:8]}"


# =============================================================================
# Results
# =============================================================================
class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    NAVIGATED = "navigated"


@dataclass
class ReplayResult:
    ok: bool
    state: RunState
    opened_tabs: int = 0
    error: Optional[str] = None
    error_type: Optional[str] = None
    note: Optional[str] = None
    failed_step_index: Optional[int] = None
    resume_at: Optional[int] = None
    episode_id: str = ""
    steps: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"ok": self.ok, "opened_tabs": self.opened_tabs, "state": self.state.value}
        if self.error is not None:
            d["error"] = self.error
            d["error_type"] = self.error_type
            d["failed_step_index"] = self.failed_step_index
        if self.note is not None:
            d["note"] = self.note
        if self.resume_at is not None:
            d["resume_at"] = self.resume_at
        d["episode_id"] = self.episode_id
        d["steps"] = self.steps
        return d


# =============================================================================
# Engine
# =============================================================================
class ReplayEngine:
    def __init__(
        self,
        document: ReplayDocument,
        *,
        timeout_ms: int = 8000,
        poll_ms: int = 100,
        max_open_tabs: int = 20,
        on_event: Optional[Callable[[Dict[str, Any]], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.doc = document
        self.timeout_ms = timeout_ms
        self.poll_ms = poll_ms
        self.max_open_tabs = max_open_tabs
        self._on_event = on_event
        self._sleep = sleep
        self._clock = clock
        self.state = RunState.IDLE

    @classmethod
    def from_settings(cls, document: ReplayDocument, settings: PipelineSettings, **kw) -> "ReplayEngine":
        return cls(
            document,
            timeout_ms=settings.replay_timeout_ms,
            poll_ms=settings.replay_poll_ms,
            max_open_tabs=settings.replay_max_open_tabs,
            **kw,
        )

    # -----------------------------
    # Telemetry
    # -----------------------------
    async def _emit(self, episode_id: str, action_type: str, payload: Dict[str, Any]) -> None:
        if self._on_event is None:
            return
        try:
            url = await self.doc.current_url()
        except Exception:
            url = ""
        self._on_event({
            "id": str(uuid.uuid4()),
            "ts": datetime.now(timezone.utc).isoformat(),
            "source": "runner",
            "app": {"name": "web", "url": url},
            "action": {"type": action_type, **payload},
            "episode_id": episode_id,
        })

    async def _pause(self, ms: int) -> None:
        if ms > 0:
            await self._sleep(ms / 1000.0)

    # -----------------------------
    # Target resolution
    # -----------------------------
    async def _by_role_and_name(self, role: str, name: str) -> Optional[Any]:
        needle = name.strip().lower()
        for el in await self.doc.visible_elements():
            if not el.visible or not role_matches(el, role):
                continue
            text = (el.text or "").strip().lower()
            if text and needle in text:
                return el.handle
        return None

    async def _by_bare_role(self, role: str) -> Optional[Any]:
        for el in await self.doc.visible_elements():
            if el.visible and role_matches(el, role):
                return el.handle
        return None

    async def _by_bare_tag(self, tag: str) -> Optional[Any]:
        tag = tag.lower()
        for el in await self.doc.visible_elements():
            if el.visible and (el.tag or "").lower() == tag:
                return el.handle
        return None

    async def find_target(self, ref: str) -> Optional[Any]:
        """One pass over the ladder; None when nothing matches right now."""
        ref = (ref or "").strip()
        if not ref:
            return None

        if ref.startswith("#"):
            el = await self.doc.get_by_id(ref[1:])
            if el is not None:
                return el

        m = ROLE_NAME_REF.match(ref)
        if m:
            el = await self._by_role_and_name(m.group(1), unescape_name(m.group(2)))
            if el is not None:
                return el

        bare = BARE_TOKEN.match(ref) is not None
        if bare and ref.lower() in KNOWN_ROLES:
            el = await self._by_bare_role(ref)
            if el is not None:
                return el

        el = await self.doc.query_selector(ref)
        if el is not None:
            return el

        if bare:
            return await self._by_bare_tag(ref)
        return None

    async def wait_for_target(self, ref: str) -> Any:
        el = await poll_until(
            lambda: self.find_target(ref),
            timeout_ms=self.timeout_ms,
            interval_ms=self.poll_ms,
            sleep=self._sleep,
            clock=self._clock,
        )
        if el is None:
            raise TargetNotFound(ref, self.timeout_ms)
        return el

    # -----------------------------
    # Run
    # -----------------------------
    async def run(
        self,
        steps: List[Step],
        max_open_tabs: Optional[int] = None,
        start_index: int = 0,
        episode_id: Optional[str] = None,
    ) -> ReplayResult:
        cap = self.max_open_tabs if max_open_tabs is None else max_open_tabs
        try:
            start_url = await self.doc.current_url()
        except Exception:
            start_url = ""
        episode_id = episode_id or new_runner_episode_id(start_url)

        self.state = RunState.RUNNING
        opened = 0
        trace: List[Dict[str, Any]] = []
        logger.info(f"▶︎ Runner: {len(steps) - start_index} step(s) [{episode_id}]")
        await self._emit(episode_id, "runner_start", {"steps": len(steps), "episode_id": episode_id})

        for i in range(start_index, len(steps)):
            s = steps[i]
            t0 = time.time()
            try:
                if isinstance(s, WaitStep):
                    logger.info(f"{i + 1}. wait {s.ms}ms")
                    await self._emit(episode_id, "runner_step", {"i": i, "type": s.type, "ms": s.ms})
                    await self._pause(s.ms)

                elif isinstance(s, OpenTabStep):
                    if opened >= cap:
                        logger.warning(f"{i + 1}. openTab skipped, cap {cap}")
                        await self._emit(episode_id, "runner_step", {"i": i, "type": s.type, "url": s.url, "skipped": "cap"})
                        trace.append(self._trace(i, s, t0, note="skipped_cap"))
                        continue
                    logger.info(f"{i + 1}. openTab → {s.url}")
                    await self._emit(episode_id, "runner_step", {"i": i, "type": s.type, "url": s.url})
                    await self.doc.open_tab(s.url)
                    opened += 1
                    await self._pause(OPEN_TAB_SETTLE_MS)

                elif isinstance(s, NavigateStep):
                    current = await self.doc.current_url()
                    target = urljoin(current, s.url) if current else s.url
                    if current and same_document_url(current, target):
                        logger.info(f"{i + 1}. navigate → {s.url} (already there)")
                        await self._emit(episode_id, "runner_step", {"i": i, "type": s.type, "url": s.url, "skipped": "same_url"})
                        trace.append(self._trace(i, s, t0, note="same_url"))
                        continue
                    logger.info(f"{i + 1}. navigate → {s.url}")
                    await self._emit(episode_id, "runner_step", {"i": i, "type": s.type, "url": s.url})
                    await self.doc.schedule_navigation(target, NAVIGATE_DELAY_MS)
                    trace.append(self._trace(i, s, t0, note="navigated"))
                    await self._emit(episode_id, "runner_done", {"ok": True, "note": "navigated"})
                    self.state = RunState.NAVIGATED
                    return ReplayResult(
                        ok=True,
                        state=self.state,
                        opened_tabs=opened,
                        note="navigated",
                        resume_at=i + 1,
                        episode_id=episode_id,
                        steps=trace,
                    )

                elif isinstance(s, ClickStep):
                    logger.info(f"{i + 1}. click → {s.selector}")
                    await self._emit(episode_id, "runner_step", {"i": i, "type": s.type, "selector": s.selector})
                    el = await self.wait_for_target(s.selector)
                    await self.doc.click(el)
                    await self._pause(CLICK_SETTLE_MS)

                elif isinstance(s, InputStep):
                    logger.info(f"{i + 1}. input → {s.selector} = {_truncate(s.value)}")
                    await self._emit(episode_id, "runner_step", {"i": i, "type": s.type, "selector": s.selector})
                    el = await self.wait_for_target(s.selector)
                    await self.doc.set_value(el, s.value)
                    await self._pause(INPUT_SETTLE_MS)

                elif isinstance(s, SubmitStep):
                    logger.info(f"{i + 1}. submit → {s.selector or '(auto)'}")
                    await self._emit(episode_id, "runner_step", {"i": i, "type": s.type, "selector": s.selector})
                    if s.selector:
                        el = await self.wait_for_target(s.selector)
                        submitted = await self.doc.submit_form(el)
                    else:
                        submitted = await self.doc.submit_form_of_active_element()
                    if not submitted:
                        raise NoFormFound()
                    await self._pause(SUBMIT_SETTLE_MS)

                trace.append(self._trace(i, s, t0))

            except Exception as e:
                error_type = e.error_type if isinstance(e, ReplayStepError) else ERROR_UNKNOWN
                msg = f"✖ step {i + 1} failed: {e}"
                logger.error(msg)
                trace.append(self._trace(i, s, t0, ok=False, error_type=error_type, message=str(e)))
                await self._emit(episode_id, "runner_error", {"i": i, "type": s.type, "message": str(e)})
                self.state = RunState.FAILED
                return ReplayResult(
                    ok=False,
                    state=self.state,
                    opened_tabs=opened,
                    error=msg,
                    error_type=error_type,
                    failed_step_index=i,
                    episode_id=episode_id,
                    steps=trace,
                )

        await self._emit(episode_id, "runner_done", {"ok": True, "openedTabs": opened, "episode_id": episode_id})
        self.state = RunState.COMPLETED
        logger.info(f"✓ Runner done ({opened} tab(s) opened)")
        return ReplayResult(ok=True, state=self.state, opened_tabs=opened, episode_id=episode_id, steps=trace)

    @staticmethod
    def _trace(
        i: int,
        s: Step,
        t0: float,
        ok: bool = True,
        error_type: Optional[str] = None,
        message: str = "",
        note: str = "",
    ) -> Dict[str, Any]:
        return {
            "index": i,
            "type": s.type,
            "ok": ok,
            "error_type": error_type,
            "message": message,
            "note": note,
            "timing_ms": int((time.time() - t0) * 1000),
        }
