"""
Execute a derived rule in a real browser.

  execute-rule recordings/rule.json --url https://example.com/form [--headless]

The rule runs through ReplayEngine over a PlaywrightDocument. A navigate step
ends an engine run; since the Playwright page survives the navigation, the
CLI waits for it and resumes with the next step (disable with --stop-on-navigate).
Runner telemetry is written as NDJSON and optionally POSTed to a collector.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import requests
from playwright.async_api import async_playwright
from pydantic import ValidationError

from observe_env import PipelineSettings, setup_logger
from observe_models import NavigateStep, Rule, Step, parse_steps
from pipeline_errors import ERROR_NAVIGATION
from playwright_document import PlaywrightDocument
from replay_engine import ReplayEngine, ReplayResult, RunState

logger = setup_logger("ExecuteRule")


# =============================================================================
# Rule loading
# =============================================================================
def load_rule(path: Path) -> Rule:
    """Accepts a rule.v1 file, a bare Rule object, or a bare list of steps."""
    raw = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(raw, list):
        return Rule(name=path.stem, steps=parse_steps(raw))
    if not isinstance(raw, dict) or not isinstance(raw.get("steps"), list):
        raise ValueError(f"{path} has no steps list")
    return Rule(
        name=raw.get("name") or path.stem,
        source_session_id=raw.get("source_session_id"),
        rule_id=raw.get("rule_id"),
        created_at=raw.get("created_at"),
        steps=parse_steps(raw["steps"]),
    )


# =============================================================================
# Telemetry
# =============================================================================
class RunnerTelemetry:
    """Buffers runner events; flush() appends them to an NDJSON file and POSTs them best-effort."""

    def __init__(
        self,
        ndjson_path: Optional[Path] = None,
        post_url: Optional[str] = None,
        timeout_s: float = 5.0,
        post: Callable[..., Any] = requests.post,
    ):
        self.ndjson_path = ndjson_path
        self.post_url = post_url
        self.timeout_s = timeout_s
        self._post = post
        self.queue: List[Dict[str, Any]] = []
        self.sent = 0

    def emit(self, event: Dict[str, Any]) -> None:
        self.queue.append(event)

    def flush(self) -> int:
        if not self.queue:
            return 0
        batch, self.queue = self.queue, []
        body = "".join(json.dumps(e, ensure_ascii=False) + "\n" for e in batch)

        if self.ndjson_path is not None:
            self.ndjson_path.parent.mkdir(parents=True, exist_ok=True)
            with self.ndjson_path.open("a", encoding="utf-8") as f:
                f.write(body)

        if self.post_url:
            try:
                self._post(
                    self.post_url,
                    data=body.encode("utf-8"),
                    headers={"Content-Type": "application/x-ndjson"},
                    timeout=self.timeout_s,
                )
            except requests.RequestException as e:
                logger.warning(f"telemetry post failed: {e}")

        self.sent += len(batch)
        return len(batch)


# =============================================================================
# Execution
# =============================================================================
def _start_url(rule: Rule, explicit: Optional[str]) -> Optional[str]:
    if explicit:
        return explicit
    for s in rule.steps:
        if isinstance(s, NavigateStep):
            return s.url
    return None


def _navigation_failed(result: ReplayResult) -> ReplayResult:
    step = (result.resume_at or 1) - 1
    msg = f"✖ step {step + 1} failed: navigation did not complete"
    logger.error(msg)
    result.ok = False
    result.state = RunState.FAILED
    result.error = msg
    result.error_type = ERROR_NAVIGATION
    result.failed_step_index = step
    return result


async def run_with_resume(
    engine: ReplayEngine,
    doc: Any,
    steps: List[Step],
    *,
    max_open_tabs: int,
    resume_after_navigate: bool = True,
    telemetry: Optional[RunnerTelemetry] = None,
) -> ReplayResult:
    """Run the steps, waiting out each real navigation and resuming after it."""
    result = await engine.run(steps, max_open_tabs=max_open_tabs)
    opened = result.opened_tabs
    trace = list(result.steps)
    while (
        resume_after_navigate
        and result.state == RunState.NAVIGATED
        and result.resume_at is not None
        and result.resume_at < len(steps)
    ):
        if telemetry:
            telemetry.flush()
        if not await doc.wait_for_navigation():
            result = _navigation_failed(result)
            break
        result = await engine.run(
            steps,
            max_open_tabs=max(0, max_open_tabs - opened),
            start_index=result.resume_at,
            episode_id=result.episode_id,
        )
        opened += result.opened_tabs
        trace.extend(result.steps)

    if result.state == RunState.NAVIGATED and not await doc.wait_for_navigation():
        result = _navigation_failed(result)

    result.opened_tabs = opened
    result.steps = trace
    return result


async def execute_rule(
    rule: Rule,
    *,
    url: Optional[str] = None,
    headless: bool = False,
    max_open_tabs: Optional[int] = None,
    resume_after_navigate: bool = True,
    settings: Optional[PipelineSettings] = None,
    telemetry: Optional[RunnerTelemetry] = None,
) -> ReplayResult:
    settings = settings or PipelineSettings.from_env()
    start = _start_url(rule, url)
    steps: List[Step] = list(rule.steps)

    async with async_playwright() as pw:
        browser = await pw.chromium.launch(headless=headless)
        context = await browser.new_context()
        try:
            page = await context.new_page()
            if start:
                logger.info(f"Navigating to: {start}")
                await page.goto(start, wait_until="domcontentloaded")

            doc = PlaywrightDocument(page)
            engine = ReplayEngine.from_settings(
                doc, settings, on_event=telemetry.emit if telemetry else None
            )

            result = await run_with_resume(
                engine,
                doc,
                steps,
                max_open_tabs=max_open_tabs if max_open_tabs is not None else settings.replay_max_open_tabs,
                resume_after_navigate=resume_after_navigate,
                telemetry=telemetry,
            )
            return result
        finally:
            if telemetry:
                telemetry.flush()
            await context.close()
            await browser.close()


def save_result(results_dir: Path, rule: Rule, result: ReplayResult) -> Path:
    ts = datetime.now(timezone.utc).isoformat()
    fname = f"{rule.name}_{ts.replace(':', '-').replace('.', '-')}.json"
    path = results_dir / fname
    results_dir.mkdir(parents=True, exist_ok=True)
    payload = {"rule": rule.name, "rule_id": rule.rule_id, "timestamp": ts, **result.to_dict()}
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    logger.info(f"saved result {path}")
    return path


# =============================================================================
# Main
# =============================================================================
def main():
    settings = PipelineSettings.from_env()

    ap = argparse.ArgumentParser(description="Replay a derived rule in Chromium")
    ap.add_argument("rule", help="rule.json produced by derive-rule")
    ap.add_argument("--url", default=None, help="Start page (defaults to the first navigate step)")
    ap.add_argument("--headless", action="store_true")
    ap.add_argument("--max-open-tabs", type=int, default=settings.replay_max_open_tabs)
    ap.add_argument("--stop-on-navigate", action="store_true", help="End the run at the first real navigation")
    ap.add_argument("--results-dir", default=str(Path(settings.output_dir) / "results"))
    ap.add_argument("--telemetry-url", default=None, help="POST runner events here as NDJSON")
    args = ap.parse_args()

    rule_path = Path(args.rule)
    if not rule_path.exists():
        logger.error(f"Rule file not found: {rule_path}")
        sys.exit(1)

    try:
        rule = load_rule(rule_path)
    except (ValueError, ValidationError) as e:
        logger.error(f"Invalid rule file: {e}")
        sys.exit(1)

    results_dir = Path(args.results_dir)
    telemetry = RunnerTelemetry(
        ndjson_path=results_dir / "runner_events.ndjson",
        post_url=args.telemetry_url,
        timeout_s=settings.http_timeout_s,
    )

    logger.info(f"Executing rule: {rule.name}")
    logger.info(f"Total steps: {len(rule.steps)}")

    result = asyncio.run(
        execute_rule(
            rule,
            url=args.url,
            headless=args.headless,
            max_open_tabs=args.max_open_tabs,
            resume_after_navigate=not args.stop_on_navigate,
            settings=settings,
            telemetry=telemetry,
        )
    )
    save_result(results_dir, rule, result)

    if result.ok:
        logger.info(f"Rule finished: state={result.state.value} opened_tabs={result.opened_tabs}")
    else:
        logger.error(result.error)
        sys.exit(2)


if __name__ == "__main__":
    main()
