#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import re
import time
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from pydantic import ValidationError

from observe_env import setup_logger
from observe_models import (
    ClickEvent,
    ClickStep,
    Event,
    InputEvent,
    InputStep,
    KeyEvent,
    NavigateEvent,
    NavigateStep,
    Rule,
    ScrollEvent,
    Step,
    SubmitEvent,
    SubmitStep,
    TargetDescriptor,
    dump_steps,
    parse_event,
)

logger = setup_logger("DeriveRule")

# -----------------------------
# URL canonicalization (stable compare)
# -----------------------------
NOISE_QUERY_PARAMS = {
    "zx", "sei", "ved", "usg", "ei",
    "fbzx", "pli", "sourceid",
    "no_sw_cr", "rlz", "oq", "gs_lcrp", "sclient",
}

def canonicalize_url(url: str) -> str:
    """Remove tracking params and fragments so “same page” compares equal."""
    u = (url or "").strip()
    if not u:
        return ""
    try:
        parts = urlsplit(u)
        q = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in NOISE_QUERY_PARAMS]
        q_sorted = urlencode(sorted(q))
        return urlunsplit((parts.scheme, parts.netloc, parts.path, q_sorted, ""))
    except ValueError:
        return u

# -----------------------------
# Loading
# -----------------------------
def safe_int(x: Any, default: int = 0) -> int:
    try:
        return int(x)
    except (TypeError, ValueError):
        return default

def _unwrap(obj: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Accept bare events and `browser_event` sink records alike."""
    if obj.get("type") == "browser_event":
        ev = obj.get("event")
        if not isinstance(ev, dict):
            return None
        ev = dict(ev)
        ev.setdefault("session_id", obj.get("session_id"))
        ev.setdefault("url", obj.get("url") or "")
        return ev
    return obj

def load_events(path: Path, session_id: Optional[str] = None) -> List[Event]:
    out: List[Event] = []
    with path.open("r", encoding="utf-8") as f:
        for n, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                raw = json.loads(line)
            except json.JSONDecodeError:
                logger.debug(f"{path.name}:{n} not json, skipped")
                continue
            if not isinstance(raw, dict):
                continue
            ev = _unwrap(raw)
            if ev is None:
                continue
            try:
                parsed = parse_event(ev)
            except ValidationError:
                continue
            if session_id and parsed.session_id != session_id:
                continue
            out.append(parsed)
    out.sort(key=lambda e: e.timestamp)
    return out

# -----------------------------
# Stable selectors
# -----------------------------
GENERIC_TAGS = {
    "div", "p", "span", "button", "input", "textarea",
    "a", "label", "section", "main", "form", "ul", "li",
}
NAME_LIMIT = 40
TEXTBOX_MIN_NAME = 4

def _is_specific(sel: str) -> bool:
    return sel.startswith("#") or "." in sel or "[" in sel

def _clip(s: Optional[str], limit: int) -> str:
    return re.sub(r"\s+", " ", (s or "")).strip()[:limit]

def _quote_name(name: str) -> str:
    return name.replace("\\", "\\\\").replace('"', '\\"')

def stable_selector(target: Optional[TargetDescriptor]) -> str:
    """
    Keep specific raw selectors (#id, .class, [attr]). Otherwise prefer
    role[name="..."]; a textbox with a short or missing name is just "textbox".
    """
    if target is None:
        return "unknown"

    sel = (target.selector or "").strip()
    role = (target.role or "").strip()
    name = _clip(target.name, NAME_LIMIT)

    weak = (not sel) or sel.lower() in GENERIC_TAGS or not _is_specific(sel)
    if weak and role:
        if role == "textbox":
            if len(name) < TEXTBOX_MIN_NAME:
                return "textbox"
            return f'textbox[name="{_quote_name(name)}"]'
        if name:
            return f'{role}[name="{_quote_name(name)}"]'
        return role

    return sel or role or "unknown"

# -----------------------------
# Step derivation
# -----------------------------
def derive_steps(events: List[Event]) -> List[Step]:
    structural: List[Step] = []
    submits: List[Step] = []
    best_value: Dict[str, str] = {}

    for ev in sorted(events, key=lambda e: e.timestamp):
        if isinstance(ev, NavigateEvent):
            if ev.url:
                structural.append(NavigateStep(url=ev.url))
            continue

        if isinstance(ev, ClickEvent):
            sel = stable_selector(ev.target)
            structural.append(ClickStep(selector=sel, name=_clip(ev.target.name, 120) or None))
            continue

        if isinstance(ev, InputEvent):
            if ev.redacted or ev.value is None:
                continue
            sel = stable_selector(ev.target)
            prev = best_value.get(sel)
            # last writer wins among equally long samples
            if prev is None or len(ev.value) >= len(prev):
                best_value[sel] = ev.value
            continue

        if isinstance(ev, SubmitEvent):
            t = ev.target
            if t is not None and (t.selector or t.role):
                submits.append(SubmitStep(selector=stable_selector(t), name=_clip(t.name, 120) or None))
            else:
                submits.append(SubmitStep())
            continue

    inputs: List[Step] = [InputStep(selector=sel, value=val) for sel, val in best_value.items()]

    cleaned: List[Step] = []
    for s in structural + inputs + submits:
        prev = cleaned[-1] if cleaned else None
        if isinstance(prev, ClickStep) and isinstance(s, ClickStep) and prev.selector == s.selector:
            continue
        cleaned.append(s)
    return cleaned

def derive_rule(events: List[Event], name: str, source_session_id: Optional[str] = None) -> Rule:
    steps = derive_steps(events)
    sid = source_session_id or next((e.session_id for e in events if e.session_id), None)
    return Rule(
        name=name,
        source_session_id=sid,
        steps=steps,
        rule_id=f"rule_{int(time.time() * 1000)}",
        created_at=int(time.time() * 1000),
    )

# -----------------------------
# Heuristic session cleaning
# -----------------------------
ACTIONABLE_TAGS = {"a", "button", "input", "select", "textarea"}
BUTTONISH_SELECTOR = re.compile(r"\b(btn|button|submit|link|nav|menu|toggle|plus|minus|add|remove)\b", re.IGNORECASE)
BUTTONISH_TEXT = re.compile(r"\+|−|-")

SCROLL_MIN_GAP_MS = 600
KEY_MIN_GAP_MS = 200
KEY_AFTER_INPUT_MS = 1500
CLICK_MIN_GAP_MS = 250
CLICK_BURST_MS = 1000
CLICK_BURST_MAX = 2
INPUT_WINDOW_MS = 60_000

def prune_session(events: List[Event]) -> List[Event]:
    """
    Drop capture noise while keeping everything a human would call an action.

    - navigate / submit always kept
    - scroll kept at most every 600ms
    - key kept if Enter/ctrl/meta or right after an input, at most every 200ms
    - click kept on actionable or button-like targets, throttled per selector
    - input: last non-empty value per selector, within 60s before the final submit
    """
    submit_ts = max((e.timestamp for e in events if isinstance(e, SubmitEvent)), default=None)
    window_start = submit_ts - INPUT_WINDOW_MS if submit_ts is not None else None

    kept: List[Event] = []
    last_input_by_selector: Dict[str, Event] = {}
    last_scroll_at = 0
    last_key_at = 0
    last_input_at = 0
    last_click_at: Dict[str, int] = {}
    click_count: Dict[str, int] = {}

    for i, ev in enumerate(events):
        ts = ev.timestamp

        if isinstance(ev, (NavigateEvent, SubmitEvent)):
            kept.append(ev)
            continue

        if isinstance(ev, ScrollEvent):
            if ts - last_scroll_at >= SCROLL_MIN_GAP_MS:
                kept.append(ev)
                last_scroll_at = ts
            continue

        if isinstance(ev, KeyEvent):
            special = ev.key == "Enter" or ev.ctrl_key or ev.meta_key
            followup = last_input_at > 0 and ts - last_input_at <= KEY_AFTER_INPUT_MS
            if (special or followup) and ts - last_key_at >= KEY_MIN_GAP_MS:
                kept.append(ev)
                last_key_at = ts
            continue

        if isinstance(ev, ClickEvent):
            sel = ev.target.selector or ""
            tag = ev.target.tag or ""
            text = ev.target.name or ""
            important = tag in ACTIONABLE_TAGS or bool(BUTTONISH_SELECTOR.search(sel)) or bool(BUTTONISH_TEXT.search(text))
            last_at = last_click_at.get(sel, 0)
            count = click_count.get(sel, 0)
            burst = count < CLICK_BURST_MAX and ts - last_at <= CLICK_BURST_MS
            if important and (ts - last_at >= CLICK_MIN_GAP_MS or burst):
                kept.append(ev)
                last_click_at[sel] = ts
                click_count[sel] = count + 1
            continue

        if isinstance(ev, InputEvent):
            changed = ev.value is not None and ev.value.strip() != ""
            within = submit_ts is None or (window_start <= ts <= submit_ts)
            if changed and within:
                sel = ev.target.selector or f"#unknown_{i}"
                last_input_by_selector[sel] = ev
            last_input_at = ts
            continue

    cleaned = kept + list(last_input_by_selector.values())
    cleaned.sort(key=lambda e: e.timestamp)
    return cleaned

# -----------------------------
# Output
# -----------------------------
def write_rule(out_path: Path, rule: Rule) -> None:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(
        json.dumps(
            {
                "schema": "rule.v1",
                "name": rule.name,
                "rule_id": rule.rule_id,
                "source_session_id": rule.source_session_id,
                "created_at": rule.created_at,
                "total_steps": len(rule.steps),
                "steps": dump_steps(rule.steps),
            },
            indent=2,
        ),
        encoding="utf-8",
    )
    logger.info(f"✅ Wrote {out_path}")

# -----------------------------
# Main
# -----------------------------
def main():
    ap = argparse.ArgumentParser(description="Derive a replayable rule from a recorded event log")
    ap.add_argument("--events", default="recordings/events.jsonl", help="JSONL of events or browser_event records")
    ap.add_argument("--session", default=None, help="Only use events of this session id")
    ap.add_argument("--name", default=None, help="Rule name (defaults to the session id)")
    ap.add_argument("--out", default=None, help="Output path (defaults to rule.json next to the events)")
    ap.add_argument("--prune", action="store_true", help="Run heuristic cleaning before deriving")
    args = ap.parse_args()

    events_path = Path(args.events).expanduser().resolve()
    if not events_path.exists():
        raise SystemExit(f"Missing events file: {events_path}")

    events = load_events(events_path, session_id=args.session)
    if not events:
        raise SystemExit(f"No usable events in {events_path}")
    if args.prune:
        before = len(events)
        events = prune_session(events)
        logger.info(f"pruned {before} -> {len(events)} events")

    name = args.name or args.session or events_path.stem
    rule = derive_rule(events, name=name, source_session_id=args.session)
    out_path = Path(args.out) if args.out else events_path.parent / "rule.json"
    write_rule(out_path, rule)

if __name__ == "__main__":
    main()
