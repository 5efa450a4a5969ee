"""
Pipeline worker configuration.

Single source of truth for worker-level defaults and tunables: polling,
concurrency, stage retry/backoff, score debounce, and the thresholds used by
scoring and parity matching.
"""
from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class WorkerConfig:
    """Immutable worker configuration loaded once at startup."""

    # --- Polling / sleep ---
    poll_interval_seconds: float = 1.0
    error_sleep_seconds: float = 5.0
    concurrency: int = 4

    # --- Stage retry ---
    max_stage_retries: int = 3
    retry_backoff_base_seconds: float = 2.0
    retry_backoff_max_seconds: float = 60.0
    stale_job_timeout_minutes: float = 15.0

    # --- Score recompute ---
    score_debounce_ms: int = 500
    reconcile_interval_seconds: float = 60.0

    # --- AI tiers ---
    ai_call_timeout_seconds: float = 120.0
    ai_chunk_max_chars: int = 30000

    # --- Scoring / parity ---
    default_auto_pass_threshold: float = 95.0
    new_pair_review_file_count: int = 50
    parity_similarity_threshold: float = 0.8

    # --- Logging ---
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - [WORKER] - %(levelname)s - %(message)s"


def load_worker_config() -> WorkerConfig:
    """Build WorkerConfig from environment variables (with defaults)."""
    def _float(key: str, default: float) -> float:
        raw = os.getenv(key)
        if raw is None:
            return default
        try:
            return float(raw)
        except (TypeError, ValueError):
            return default

    def _int(key: str, default: int) -> int:
        raw = os.getenv(key)
        if raw is None:
            return default
        try:
            return int(raw)
        except (TypeError, ValueError):
            return default

    return WorkerConfig(
        poll_interval_seconds=_float("WORKER_POLL_INTERVAL", 1.0),
        error_sleep_seconds=_float("WORKER_ERROR_SLEEP", 5.0),
        concurrency=max(1, _int("WORKER_CONCURRENCY", 4)),
        max_stage_retries=max(0, _int("PIPELINE_MAX_STAGE_RETRIES", 3)),
        retry_backoff_base_seconds=_float("PIPELINE_RETRY_BACKOFF_BASE", 2.0),
        retry_backoff_max_seconds=_float("PIPELINE_RETRY_BACKOFF_MAX", 60.0),
        stale_job_timeout_minutes=_float("WORKER_STALE_JOB_TIMEOUT_MINUTES", 15.0),
        score_debounce_ms=_int("PIPELINE_SCORE_DEBOUNCE_MS", 500),
        reconcile_interval_seconds=_float("PIPELINE_RECONCILE_INTERVAL", 60.0),
        ai_call_timeout_seconds=_float("AI_CALL_TIMEOUT_SECONDS", 120.0),
        ai_chunk_max_chars=_int("PIPELINE_AI_CHUNK_MAX_CHARS", 30000),
        default_auto_pass_threshold=_float("PIPELINE_AUTO_PASS_THRESHOLD", 95.0),
        new_pair_review_file_count=_int("PIPELINE_NEW_PAIR_REVIEW_FILES", 50),
        parity_similarity_threshold=_float("PARITY_SIMILARITY_THRESHOLD", 0.8),
        log_level=os.getenv("WORKER_LOG_LEVEL", "INFO"),
        log_format=os.getenv(
            "WORKER_LOG_FORMAT",
            "%(asctime)s - [WORKER] - %(levelname)s - %(message)s",
        ),
    )
