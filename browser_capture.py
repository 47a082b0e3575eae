"""
Browser Capture
Records a browsing session in Chromium: every tab's clicks, inputs, submits,
keys, scrolls and navigations go through the CaptureCoordinator, and the
Playwright page video becomes the session's recording artifact.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import secrets
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from playwright.async_api import BrowserContext, Page, async_playwright
from playwright.async_api import Error as PWError
from pydantic import ValidationError

from capture_coordinator import CaptureCoordinator, HttpIngestClient, JsonlEventSink
from observe_env import PipelineSettings, setup_logger
from observe_models import parse_event

logger = setup_logger("BrowserCapture")


def _now_ms() -> int:
    return int(time.time() * 1000)


def new_session_id() -> str:
    return f"session_{_now_ms()}_{secrets.token_hex(5)}"


# -----------------------------
# In-page instrumentation
# -----------------------------
CAPTURE_SCRIPT = r"""
(() => {
  if (window.__OBSERVE_INJECTED__) return;
  try { if (window.top !== window.self) { window.__OBSERVE_INJECTED__ = true; return; } } catch (_) {}
  window.__OBSERVE_INJECTED__ = true;

  const sessionId = window.__OBSERVE_SESSION_ID__ ||
    `temp_${Date.now()}_${Math.random().toString(36).slice(2, 11)}`;
  const MAX_VALUE = 200;

  function safeText(t) {
    if (!t) return "";
    return String(t).replace(/\s+/g, " ").trim();
  }

  function roleOf(el) {
    const explicit = el.getAttribute && el.getAttribute("role");
    if (explicit) return explicit;
    if (el.isContentEditable) return "textbox";
    const tag = (el.tagName || "").toLowerCase();
    if (tag === "button") return "button";
    if (tag === "a") return "link";
    if (tag === "input") {
      const type = (el.getAttribute("type") || "text").toLowerCase();
      if (type === "checkbox" || type === "radio") return type;
      if (type === "submit" || type === "button" || type === "reset") return "button";
      if (["text", "email", "search", "tel", "url", "password", "number"].includes(type)) return "textbox";
      return null;
    }
    if (tag === "textarea") return "textbox";
    if (tag === "select") return "combobox";
    return null;
  }

  function nameOf(el) {
    const aria = el.getAttribute && el.getAttribute("aria-label");
    if (aria) return safeText(aria);
    const ph = el.getAttribute && el.getAttribute("placeholder");
    if (ph) return safeText(ph);
    const txt = safeText(el.innerText || el.textContent || "");
    return txt ? txt.slice(0, 120) : null;
  }

  function cssSelector(el) {
    const tag = (el.tagName || "").toLowerCase();
    if (el.id) return "#" + el.id;
    const cls = typeof el.className === "string"
      ? el.className.split(/\s+/).filter(Boolean).slice(0, 2) : [];
    if (cls.length) return tag + "." + cls.join(".");
    return tag;
  }

  function target(el) {
    if (!el || !el.tagName) return null;
    return {
      role: roleOf(el),
      name: nameOf(el),
      selector: cssSelector(el),
      tag: (el.tagName || "").toLowerCase(),
    };
  }

  function send(type, extra) {
    if (typeof window.observeEvent !== "function") return;
    const timestamp = Date.now();
    const url = location.href;
    const payload = Object.assign({ type, timestamp, session_id: sessionId, url }, extra || {});
    payload.fingerprint = `${type}|${Math.floor(timestamp / 200)}|${url}`;
    try { window.observeEvent(payload); } catch (_) {}
  }

  function isRedacted(el) {
    return (el.type === "password") || (el.hasAttribute && el.hasAttribute("data-observe-redact"));
  }

  document.addEventListener("click", (e) => {
    const t = target(e.target);
    if (t) send("click", { target: t });
  }, true);

  document.addEventListener("input", (e) => {
    const el = e.target;
    const t = target(el);
    if (!t) return;
    const redacted = isRedacted(el);
    let value = null;
    if (!redacted) {
      value = el.isContentEditable ? (el.textContent || "") : (el.value ?? "");
      value = String(value).slice(0, MAX_VALUE);
    }
    send("input", { target: t, value, redacted });
  }, true);

  document.addEventListener("submit", (e) => {
    send("submit", { target: target(e.target) });
  }, true);

  let keyTimer = null;
  document.addEventListener("keydown", (e) => {
    clearTimeout(keyTimer);
    const k = { key: e.key, code: e.code, ctrl_key: e.ctrlKey, alt_key: e.altKey, shift_key: e.shiftKey, meta_key: e.metaKey };
    keyTimer = setTimeout(() => send("key", k), 50);
  }, true);

  let scrollTimer = null;
  let lastX = window.scrollX, lastY = window.scrollY;
  window.addEventListener("scroll", () => {
    clearTimeout(scrollTimer);
    scrollTimer = setTimeout(() => {
      const x = Math.round(window.scrollX), y = Math.round(window.scrollY);
      if (Math.abs(x - lastX) < 4 && Math.abs(y - lastY) < 4) return;
      lastX = x; lastY = y;
      send("scroll", { scroll_x: x, scroll_y: y });
    }, 220);
  }, { capture: true, passive: true });

  function onNavigate() { send("navigate", { title: document.title || null }); }
  if (document.readyState === "loading") document.addEventListener("DOMContentLoaded", onNavigate);
  else onNavigate();
  window.addEventListener("popstate", onNavigate);
  window.addEventListener("hashchange", onNavigate);
})();
"""


class BrowserCapture:
    def __init__(
        self,
        coordinator: CaptureCoordinator,
        output_dir: str = "./recordings",
        browser_type: str = "chromium",
        browser_channel: Optional[str] = None,
        headless: bool = False,
        session_id: Optional[str] = None,
    ):
        self.coordinator = coordinator
        self.browser_type = browser_type
        self.browser_channel = browser_channel
        self.headless = headless

        self.session_id = session_id or new_session_id()
        self.session_dir = Path(output_dir) / self.session_id
        self.video_dir = self.session_dir / "video"
        self.video_dir.mkdir(parents=True, exist_ok=True)

        self.playwright = None
        self.browser = None
        self.browser_context: Optional[BrowserContext] = None
        self.pages: List[Page] = []
        self._source_ids: Dict[int, str] = {}
        self._tab_seq = 0

        self.started_at: Optional[int] = None
        self.stopped_at: Optional[int] = None
        self.is_recording = False

    # -----------------------------
    # Sources (one per tab)
    # -----------------------------
    def _source_for(self, page: Page) -> str:
        key = id(page)
        sid = self._source_ids.get(key)
        if sid is None:
            self._tab_seq += 1
            sid = f"tab_{self._tab_seq}"
            self._source_ids[key] = sid
        return sid

    def _on_page(self, page: Page) -> None:
        source_id = self._source_for(page)
        self.pages.append(page)
        self.coordinator.control("tab_monitored", source_id, url=page.url, session_id=self.session_id)
        page.on("close", lambda p: self.coordinator.close_source(self._source_for(p)))
        logger.info(f"monitoring {source_id}")

    async def _event_binding(self, source: Dict[str, Any], payload: Any) -> None:
        if not isinstance(payload, dict):
            return
        page = source.get("page")
        source_id = self._source_for(page) if page is not None else "tab_unknown"
        try:
            ev = parse_event(payload)
        except ValidationError as e:
            logger.debug(f"bad payload from {source_id}: {e.errors()[:1]}")
            return
        self.coordinator.ingest(source_id, ev)

    # -----------------------------
    # Lifecycle
    # -----------------------------
    async def start(self, url: Optional[str] = None) -> Page:
        self.playwright = await async_playwright().start()
        browser_launcher = getattr(self.playwright, self.browser_type)

        launch_args: Dict[str, Any] = {"headless": self.headless, "args": ["--disable-blink-features=AutomationControlled"]}
        if self.browser_channel:
            launch_args["channel"] = self.browser_channel

        self.browser = await browser_launcher.launch(**launch_args)
        self.browser_context = await self.browser.new_context(
            viewport={"width": 1280, "height": 720},
            record_video_dir=str(self.video_dir),
            record_video_size={"width": 1280, "height": 720},
            ignore_https_errors=True,
        )

        await self.browser_context.expose_binding("observeEvent", self._event_binding)
        await self.browser_context.add_init_script(f"window.__OBSERVE_SESSION_ID__ = {json.dumps(self.session_id)};")
        await self.browser_context.add_init_script(CAPTURE_SCRIPT)
        self.browser_context.on("page", self._on_page)

        self.coordinator.start()
        self.started_at = _now_ms()
        self.is_recording = True
        self.coordinator.control(
            "recording_control",
            action="start_recording",
            session_id=self.session_id,
            recording_start_timestamp=self.started_at,
        )

        page = await self.browser_context.new_page()
        if url:
            await page.goto(url, wait_until="domcontentloaded")

        logger.info(f"=== Recording session {self.session_id} ===")
        logger.info(f"Output directory: {self.session_dir}")
        return page

    async def stop(self) -> Optional[str]:
        """Close the browser, upload the main tab's video, drain the coordinator. Returns the artifact id."""
        if not self.is_recording:
            return None
        self.is_recording = False
        self.stopped_at = _now_ms()
        self.coordinator.control(
            "recording_control", action="stop_recording", session_id=self.session_id
        )

        main_video = self.pages[0].video if self.pages else None
        if self.browser_context:
            try:
                await self.browser_context.close()
            except PWError as e:
                logger.warning(f"Error closing browser context: {e}")
        if self.browser:
            try:
                await self.browser.close()
            except PWError as e:
                logger.warning(f"Error closing browser: {e}")
        if self.playwright:
            await self.playwright.stop()

        artifact_id = None
        if main_video is not None:
            artifact_id = await self._upload_video(Path(await main_video.path()))

        await self.coordinator.stop()
        logger.info(f"✓ Recording saved to: {self.session_dir}")
        return artifact_id

    async def _upload_video(self, path: Path) -> Optional[str]:
        if not path.exists():
            logger.warning(f"no video at {path}")
            return None
        data = path.read_bytes()
        artifact_id = f"rec_{self.session_id}"
        self.coordinator.queue_artifact(artifact_id, data, mime="video/webm")
        await self.coordinator.flush()
        await self.coordinator.finish_artifact(
            artifact_id,
            duration_ms=(self.stopped_at or _now_ms()) - (self.started_at or 0),
            mime="video/webm",
            completed_at=self.stopped_at,
        )
        return artifact_id


# -----------------------------
# Main
# -----------------------------
async def run_capture(args: argparse.Namespace) -> None:
    settings = PipelineSettings.from_env()
    session_id = new_session_id()
    if args.jsonl:
        sink = JsonlEventSink(Path(args.output_dir) / session_id)
    else:
        urls = [args.server] if args.server else settings.ingest_urls
        sink = HttpIngestClient(urls, timeout_s=settings.http_timeout_s)

    coordinator = CaptureCoordinator(sink, settings=settings)
    capture = BrowserCapture(
        coordinator,
        output_dir=args.output_dir,
        browser_channel=args.channel,
        headless=args.headless,
        session_id=session_id,
    )

    await capture.start(args.url)
    logger.info("Press Enter (or Ctrl+C) to stop recording")
    try:
        await asyncio.to_thread(input)
    except (KeyboardInterrupt, EOFError, asyncio.CancelledError):
        logger.warning("⚠ Interrupted")
    finally:
        artifact_id = await capture.stop()
        for outcome in coordinator.outcomes:
            status = "ok" if outcome.ok else f"failed ({outcome.error})"
            logger.info(f"artifact {outcome.artifact_id}: {status}")
        if artifact_id is None:
            logger.warning("no video artifact was produced")
        logger.info(f"events: {coordinator.counters}")


def main():
    settings = PipelineSettings.from_env()
    ap = argparse.ArgumentParser(description="Record a browser session with events + video")
    ap.add_argument("--url", default=None, help="Page to open first")
    ap.add_argument("--server", default=None, help="Ingest server base URL (defaults to OBSERVE_INGEST_URLS)")
    ap.add_argument("--jsonl", action="store_true", help="Write events.jsonl + video locally instead of uploading")
    ap.add_argument("--output-dir", default=settings.output_dir)
    ap.add_argument("--channel", default=None, help="Browser channel, e.g. chrome")
    ap.add_argument("--headless", action="store_true")
    args = ap.parse_args()

    try:
        asyncio.run(run_capture(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
