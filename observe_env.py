"""
observe_env.py

Environment + logging helpers shared by the capture, ingest and replay scripts.

- Loads a local .env once (python-dotenv)
- Env readers that fall back to defaults on missing/garbled values
- setup_logger(): one stream handler per named logger, level from OBSERVE_LOG_LEVEL
- PipelineSettings: every tunable of the pipeline in one place
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

load_dotenv()


# -----------------------------------------------------------------------------
# Env helpers
# -----------------------------------------------------------------------------
def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None:
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None:
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    if v is None:
        return default
    return str(v).strip()


def _env_list(name: str, default: List[str]) -> List[str]:
    v = os.getenv(name)
    if v is None:
        return list(default)
    items = [x.strip() for x in v.split(",") if x.strip()]
    return items or list(default)


# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
def _parse_log_level(s: str, default: int = logging.INFO) -> int:
    if not s:
        return default
    s = s.strip().upper()
    return {
        "CRITICAL": logging.CRITICAL,
        "ERROR": logging.ERROR,
        "WARNING": logging.WARNING,
        "WARN": logging.WARNING,
        "INFO": logging.INFO,
        "DEBUG": logging.DEBUG,
    }.get(s, default)


def setup_logger(name: str) -> logging.Logger:
    level = _parse_log_level(_env_str("OBSERVE_LOG_LEVEL", "INFO"), default=logging.INFO)
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if logger.handlers:
        return logger
    ch = logging.StreamHandler()
    ch.setLevel(level)
    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    ch.setFormatter(formatter)
    logger.addHandler(ch)
    return logger


# -----------------------------------------------------------------------------
# Settings
# -----------------------------------------------------------------------------
@dataclass
class PipelineSettings:
    # capture
    dedupe_window_ms: int = 250
    flush_interval_ms: int = 1000
    chunk_bytes: int = 256 * 1024
    ingest_urls: List[str] = field(default_factory=lambda: ["http://localhost:8000"])
    http_timeout_s: float = 10.0
    output_dir: str = "recordings"

    # completion retries
    completion_base_ms: int = 300
    completion_step_ms: int = 300
    completion_cap_ms: int = 2000
    completion_max_retries: int = 3

    # correlation
    correlation_grace_ms: int = 1500
    min_overlap_ms: int = 500
    fallback_duration_ms: int = 8000

    # session store
    session_ttl_h: float = 24.0
    temp_merge_window_ms: int = 30_000
    artifact_max_age_ms: int = 600_000

    # replay
    replay_timeout_ms: int = 8000
    replay_poll_ms: int = 100
    replay_max_open_tabs: int = 20

    port: int = 8000

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        return cls(
            dedupe_window_ms=_env_int("OBSERVE_DEDUPE_WINDOW_MS", 250),
            flush_interval_ms=_env_int("OBSERVE_FLUSH_INTERVAL_MS", 1000),
            chunk_bytes=_env_int("OBSERVE_CHUNK_BYTES", 256 * 1024),
            ingest_urls=_env_list("OBSERVE_INGEST_URLS", ["http://localhost:8000"]),
            http_timeout_s=_env_float("OBSERVE_HTTP_TIMEOUT_S", 10.0),
            output_dir=_env_str("OBSERVE_OUTPUT_DIR", "recordings"),
            completion_base_ms=_env_int("OBSERVE_COMPLETION_BASE_MS", 300),
            completion_step_ms=_env_int("OBSERVE_COMPLETION_STEP_MS", 300),
            completion_cap_ms=_env_int("OBSERVE_COMPLETION_CAP_MS", 2000),
            completion_max_retries=_env_int("OBSERVE_COMPLETION_MAX_RETRIES", 3),
            correlation_grace_ms=_env_int("OBSERVE_CORRELATION_GRACE_MS", 1500),
            min_overlap_ms=_env_int("OBSERVE_MIN_OVERLAP_MS", 500),
            fallback_duration_ms=_env_int("OBSERVE_FALLBACK_DURATION_MS", 8000),
            session_ttl_h=_env_float("OBSERVE_SESSION_TTL_H", 24.0),
            temp_merge_window_ms=_env_int("OBSERVE_TEMP_MERGE_WINDOW_MS", 30_000),
            artifact_max_age_ms=_env_int("OBSERVE_ARTIFACT_MAX_AGE_MS", 600_000),
            replay_timeout_ms=_env_int("REPLAY_TIMEOUT_MS", 8000),
            replay_poll_ms=_env_int("REPLAY_POLL_MS", 100),
            replay_max_open_tabs=_env_int("REPLAY_MAX_OPEN_TABS", 20),
            port=_env_int("PORT", 8000),
        )
