"""
Live ReplayDocument over an async Playwright Page.

Element snapshots are tagged in the page with a `data-replay-idx` attribute so
a match found in Python can be turned back into an ElementHandle.
"""

from __future__ import annotations

import asyncio
from typing import Any, List, Optional

from playwright.async_api import ElementHandle, Page
from playwright.async_api import Error as PWError
from playwright.async_api import TimeoutError as PWTimeoutError

from observe_env import setup_logger
from replay_engine import ElementInfo

logger = setup_logger("PlaywrightDocument")

IDX_ATTR = "data-replay-idx"

SNAPSHOT_JS = r"""
(attr) => {
  document.querySelectorAll('[' + attr + ']').forEach(el => el.removeAttribute(attr));
  const out = [];
  const all = document.body ? document.body.querySelectorAll('*') : [];
  let i = 0;
  for (const el of all) {
    const r = el.getBoundingClientRect ? el.getBoundingClientRect() : null;
    if (!r || r.width <= 0 || r.height <= 0) continue;
    const idx = String(i++);
    el.setAttribute(attr, idx);
    const text = (el.textContent || el.getAttribute('aria-label') || el.getAttribute('placeholder') || '').trim();
    out.push({
      idx,
      tag: el.tagName.toLowerCase(),
      role: el.getAttribute('role') || '',
      type: el.getAttribute('type') || '',
      text: text.slice(0, 500),
    });
  }
  return out;
}
"""

SET_VALUE_JS = r"""
(el, value) => {
  el.focus();
  let proto = null;
  if (el instanceof HTMLTextAreaElement) proto = HTMLTextAreaElement.prototype;
  else if (el instanceof HTMLSelectElement) proto = HTMLSelectElement.prototype;
  else if (el instanceof HTMLInputElement) proto = HTMLInputElement.prototype;
  const desc = proto ? Object.getOwnPropertyDescriptor(proto, 'value') : null;
  if (desc && desc.set) desc.set.call(el, value);
  else if (el.isContentEditable) el.textContent = value;
  else el.value = value;
  el.dispatchEvent(new Event('input', { bubbles: true }));
  el.dispatchEvent(new Event('change', { bubbles: true }));
}
"""

SUBMIT_FORM_OF_JS = r"""
(el) => {
  const form = el.tagName === 'FORM' ? el : (el.closest ? el.closest('form') : null);
  if (!form) return false;
  if (form.requestSubmit) form.requestSubmit(); else form.submit();
  return true;
}
"""

SUBMIT_ACTIVE_FORM_JS = r"""
() => {
  const active = document.activeElement;
  const form = (active && active.closest ? active.closest('form') : null) || document.querySelector('form');
  if (!form) return false;
  if (form.requestSubmit) form.requestSubmit(); else form.submit();
  return true;
}
"""


class PlaywrightDocument:
    def __init__(self, page: Page, action_timeout_ms: int = 5000):
        self.page = page
        self.action_timeout_ms = action_timeout_ms
        self.opened_pages: List[Page] = []
        self._pending_nav: Optional[asyncio.Task] = None

    async def current_url(self) -> str:
        return self.page.url

    async def get_by_id(self, element_id: str) -> Optional[ElementHandle]:
        handle = await self.page.evaluate_handle("id => document.getElementById(id)", element_id)
        return handle.as_element()

    async def visible_elements(self) -> List[ElementInfo]:
        try:
            rows = await self.page.evaluate(SNAPSHOT_JS, IDX_ATTR)
        except PWError as e:
            logger.debug(f"snapshot failed: {e}")
            return []
        return [
            ElementInfo(
                handle=f'[{IDX_ATTR}="{r["idx"]}"]',
                tag=r.get("tag") or "",
                role=r.get("role") or "",
                type=r.get("type") or "",
                text=r.get("text") or "",
            )
            for r in rows
        ]

    async def query_selector(self, selector: str) -> Optional[ElementHandle]:
        try:
            return await self.page.query_selector(f"css={selector}")
        except PWError:
            return None

    async def _resolve(self, handle: Any) -> ElementHandle:
        if isinstance(handle, str):
            el = await self.page.query_selector(handle)
            if el is None:
                raise PWError(f"element detached: {handle}")
            return el
        return handle

    async def click(self, handle: Any) -> None:
        el = await self._resolve(handle)
        await el.click(timeout=self.action_timeout_ms)

    async def set_value(self, handle: Any, value: str) -> None:
        el = await self._resolve(handle)
        await el.evaluate(SET_VALUE_JS, value)

    async def submit_form(self, handle: Any) -> bool:
        el = await self._resolve(handle)
        return bool(await el.evaluate(SUBMIT_FORM_OF_JS))

    async def submit_form_of_active_element(self) -> bool:
        return bool(await self.page.evaluate(SUBMIT_ACTIVE_FORM_JS))

    async def open_tab(self, url: str) -> None:
        new_page = await self.page.context.new_page()
        self.opened_pages.append(new_page)
        try:
            await new_page.goto(url, wait_until="domcontentloaded")
        except (PWTimeoutError, PWError) as e:
            logger.warning(f"openTab {url}: {e}")

    async def schedule_navigation(self, url: str, delay_ms: int) -> None:
        async def _go():
            await asyncio.sleep(delay_ms / 1000.0)
            await self.page.goto(url, wait_until="domcontentloaded")

        self._pending_nav = asyncio.create_task(_go())

    async def wait_for_navigation(self) -> bool:
        """Await a scheduled navigation. False when it failed or none was pending."""
        task, self._pending_nav = self._pending_nav, None
        if task is None:
            return False
        try:
            await task
            logger.info(f"✓ Navigation successful: {self.page.url}")
            return True
        except PWTimeoutError as e:
            logger.error(f"Navigation timeout: {e}")
        except PWError as e:
            logger.error(f"Navigation error: {e}")
        return False
