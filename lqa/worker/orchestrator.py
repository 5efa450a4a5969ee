"""
Per-file stage orchestrator.

A file's ``status`` names the last stage whose terminal write committed::

    uploaded -> parsing -> parsed -> l1 -> l2 -> [l3] -> scored      (+ error)

``parsing`` is the only in-flight state; economy mode skips ``l3``. Each
stage is one ``process_file`` job keyed ``process-file:{fileId}:{stage}``.
``advance`` runs the stage work, moves the status with a compare-and-swap
UPDATE and enqueues the next stage's job in the same transaction, so stages
of one file are strictly sequential and a replayed job is a no-op.
"""
from __future__ import annotations

import logging
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from lqa import config as app_config
from lqa.domain import FindingDraft
from lqa.models import PipelineJob
from lqa.services.ai_tiers import run_l2_screening, run_l3_review
from lqa.services.rule_engine import run_rules
from lqa.services.scoring import score_file
from lqa.worker import db as pipeline_db
from lqa.worker.batch import check_batch_completion
from lqa.worker.context import PipelineServices, StageContext
from lqa.worker.jobs import enqueue_process_file
from lqa.worker.errors import (
    AuditWriteError,
    ValidationError,
    backoff_seconds,
    classify_stage_error,
    require_tenant,
)

logger = logging.getLogger(__name__)

STAGE_ORDER = ("uploaded", "parsing", "parsed", "l1", "l2", "l3", "scored")
_STAGE_RANK = {stage: idx for idx, stage in enumerate(STAGE_ORDER)}
TERMINAL_STATUSES = frozenset({"scored", "error"})
PROCESSING_MODES = ("economy", "thorough")


def stages_for_mode(mode: str) -> tuple[str, ...]:
    if mode == "thorough":
        return ("parsed", "l1", "l2", "l3", "scored")
    return ("parsed", "l1", "l2", "scored")


def next_stage(status: str, mode: str = "economy") -> str | None:
    """The stage that follows *status*; None once the file is terminal."""
    if status in TERMINAL_STATUSES:
        return None
    if status in ("uploaded", "parsing"):
        return "parsed"
    stages = stages_for_mode(mode)
    if status not in stages:
        # l3 status under economy mode: only scoring remains.
        return "scored" if status == "l3" else None
    idx = stages.index(status)
    return stages[idx + 1] if idx + 1 < len(stages) else None


def predecessors(stage: str, mode: str = "economy") -> tuple[str, ...]:
    """Statuses from which *stage* may run."""
    if stage == "parsed":
        return ("uploaded", "parsing")
    if stage == "scored":
        return ("l3",) if mode == "thorough" else ("l2",)
    stages = stages_for_mode(mode)
    return (stages[stages.index(stage) - 1],)


def is_at_or_past(status: str, stage: str) -> bool:
    if status not in _STAGE_RANK or stage not in _STAGE_RANK:
        return False
    return _STAGE_RANK[status] >= _STAGE_RANK[stage]


# ---------------------------------------------------------------------------
# Stage work
# ---------------------------------------------------------------------------

def _row_to_draft(row) -> FindingDraft:
    return FindingDraft(
        file_id=str(row.file_id),
        stage=row.stage,
        layer=row.layer,
        rule_id=row.rule_id,
        category=row.category,
        severity=row.severity,
        description=row.description,
        segment_id=str(row.segment_id) if row.segment_id else None,
    )


async def _stage_parsed(ctx: StageContext) -> dict:
    segments = await ctx.services.segment_source.get_segments(ctx.db, ctx.tenant_id, ctx.file_id)
    if not segments:
        raise ValidationError(f"File {ctx.file_id} has no segments")
    logger.info("[FILE %s] parsed: %s segments", ctx.file_id, len(segments))
    return {"error_message": None}


async def _stage_l1(ctx: StageContext) -> dict:
    services = ctx.services
    segments = await services.segment_source.get_segments(ctx.db, ctx.tenant_id, ctx.file_id)
    terms = await services.glossary_source.get_terms(ctx.db, ctx.tenant_id, ctx.project.glossary_id)
    custom_rules = await services.taxonomy_source.get_custom_rules(ctx.db, ctx.tenant_id, ctx.project.id)
    drafts = run_rules(
        ctx.file_id,
        segments,
        glossary_terms=terms,
        custom_rules=custom_rules,
        suppressed_categories=ctx.project.suppressed_categories or [],
    )
    inserted = await pipeline_db.upsert_findings(ctx.db, ctx.tenant_id, ctx.project.id, drafts)
    logger.info("[FILE %s] L1: %s findings (%s new)", ctx.file_id, len(drafts), inserted)
    return {}


async def _stage_l2(ctx: StageContext) -> dict:
    services = ctx.services
    segments = await services.segment_source.get_segments(ctx.db, ctx.tenant_id, ctx.file_id)
    l1_rows = await pipeline_db.load_findings_for_file(ctx.db, ctx.tenant_id, ctx.file_id, layer="L1")
    categories = await services.taxonomy_source.get_active_categories(ctx.db, ctx.tenant_id)
    result = await run_l2_screening(
        services.tier_client,
        ctx.file_id,
        segments,
        [_row_to_draft(r) for r in l1_rows],
        categories,
        pinned_model=ctx.project.pinned_l2_model,
        max_chars=ctx.config.ai_chunk_max_chars,
        prompt_version=app_config.L2_PROMPT_VERSION,
    )
    inserted = await pipeline_db.upsert_findings(ctx.db, ctx.tenant_id, ctx.project.id, result.findings)
    logger.info(
        "[FILE %s] L2: %s findings (%s new), %s escalated",
        ctx.file_id, len(result.findings), inserted, len(result.escalated_segment_ids),
    )
    return {
        "escalated_segment_ids": result.escalated_segment_ids,
        "escalation_hints": result.hints,
    }


async def _stage_l3(ctx: StageContext) -> dict:
    services = ctx.services
    escalated = list(ctx.file.escalated_segment_ids or [])
    if not escalated:
        logger.info("[FILE %s] L3: nothing escalated", ctx.file_id)
        return {}
    segments = await services.segment_source.get_segments(ctx.db, ctx.tenant_id, ctx.file_id)
    categories = await services.taxonomy_source.get_active_categories(ctx.db, ctx.tenant_id)
    hints = dict(ctx.file.escalation_hints or {})
    if len(hints) < len(escalated):
        # Escalations without a stored hint fall back to the persisted L2 findings.
        l2_rows = await pipeline_db.load_findings_for_file(ctx.db, ctx.tenant_id, ctx.file_id, layer="L2")
        for r in l2_rows:
            if r.segment_id is not None:
                hints.setdefault(str(r.segment_id), f"{r.category}: {r.description}")
    drafts = await run_l3_review(
        services.tier_client,
        ctx.file_id,
        segments,
        escalated,
        categories,
        hints=hints,
        pinned_model=ctx.project.pinned_l3_model,
        max_chars=ctx.config.ai_chunk_max_chars,
        prompt_version=app_config.L3_PROMPT_VERSION,
    )
    inserted = await pipeline_db.upsert_findings(ctx.db, ctx.tenant_id, ctx.project.id, drafts)
    logger.info("[FILE %s] L3: %s findings (%s new)", ctx.file_id, len(drafts), inserted)
    return {}


async def _stage_scored(ctx: StageContext) -> dict:
    await score_file(
        ctx.db,
        ctx.tenant_id,
        ctx.file_id,
        audit=ctx.services.audit,
        default_threshold=ctx.config.default_auto_pass_threshold,
        new_pair_review_count=ctx.config.new_pair_review_file_count,
        user_id=ctx.user_id,
    )
    return {}


STAGE_HANDLERS: dict[str, Callable[[StageContext], Awaitable[dict]]] = {
    "parsed": _stage_parsed,
    "l1": _stage_l1,
    "l2": _stage_l2,
    "l3": _stage_l3,
    "scored": _stage_scored,
}


# ---------------------------------------------------------------------------
# advance / process_file_event
# ---------------------------------------------------------------------------

async def advance(ctx: StageContext, stage: str) -> bool:
    """Run *stage* for the file and commit it. Returns False when it was a no-op.

    Safe to call repeatedly: a file already at or past *stage* (or in
    ``error``) is left alone, and a lost compare-and-swap rolls back.
    Raises ValidationError when the predecessor stage has not committed.
    """
    status = ctx.file.status
    if status == "error" or is_at_or_past(status, stage):
        logger.info("[FILE %s] %s already done (status=%s), skipping", ctx.file_id, stage, status)
        return False
    if stage not in stages_for_mode(ctx.mode):
        raise ValidationError(f"Stage {stage!r} is not part of {ctx.mode} mode")
    expected = predecessors(stage, ctx.mode)
    if status not in expected:
        raise ValidationError(f"Cannot run {stage} for file {ctx.file_id}: status is {status!r}, expected {expected}")

    if stage == "parsed" and status == "uploaded":
        if not await pipeline_db.transition_file_status(ctx.db, ctx.tenant_id, ctx.file_id, ("uploaded",), "parsing"):
            await pipeline_db.safe_rollback(ctx.db)
            logger.info("[FILE %s] parsing already claimed by another worker", ctx.file_id)
            return False
        await ctx.db.commit()
        expected = ("parsing",)

    values = await STAGE_HANDLERS[stage](ctx)

    moved = await pipeline_db.transition_file_status(ctx.db, ctx.tenant_id, ctx.file_id, expected, stage, **values)
    if not moved:
        await pipeline_db.safe_rollback(ctx.db)
        logger.warning("[FILE %s] %s lost the status race, rolled back", ctx.file_id, stage)
        return False

    following = next_stage(stage, ctx.mode)
    if following is not None:
        await enqueue_process_file(
            ctx.db, ctx.tenant_id, ctx.file_id, ctx.project.id, following,
            mode=ctx.mode, batch_id=ctx.batch_id, user_id=ctx.user_id,
        )
    await ctx.db.commit()
    logger.info("[FILE %s] %s -> %s", ctx.file_id, status, stage)
    return True


async def process_file_event(db: AsyncSession, services: PipelineServices, payload: dict) -> str | None:
    """Handle one ``process-file`` event. Returns the stage that was attempted (None at terminal)."""
    tenant_id = require_tenant(payload.get("tenantId"))
    file_id = payload.get("fileId")
    qa_file = await pipeline_db.get_file(db, tenant_id, file_id)
    if qa_file is None:
        raise ValidationError(f"File {file_id} not found")
    project = await pipeline_db.get_project(db, tenant_id, qa_file.project_id)
    if project is None:
        raise ValidationError(f"Project {qa_file.project_id} not found for file {file_id}")

    mode = payload.get("mode") or project.processing_mode or "economy"
    if mode not in PROCESSING_MODES:
        raise ValidationError(f"Unknown processing mode {mode!r}")
    batch_id = payload.get("batchId") or (str(qa_file.batch_id) if qa_file.batch_id else None)
    stage = payload.get("stage") or next_stage(qa_file.status, mode)
    terminal = qa_file.status in TERMINAL_STATUSES

    if stage is not None:
        ctx = StageContext(
            db=db,
            services=services,
            tenant_id=str(tenant_id),
            file=qa_file,
            project=project,
            mode=mode,
            batch_id=batch_id,
            user_id=payload.get("userId"),
        )
        ran = await advance(ctx, stage)
        terminal = terminal or (ran and next_stage(stage, mode) is None)

    # Re-checked on replays too, in case a worker died between the commit and the guard.
    if terminal and batch_id:
        await check_batch_completion(db, tenant_id, batch_id)
    return stage


# ---------------------------------------------------------------------------
# Failure policy
# ---------------------------------------------------------------------------

async def handle_stage_failure(
    db: AsyncSession,
    services: PipelineServices,
    job: PipelineJob,
    error: BaseException,
) -> str:
    """Apply the retry policy to a failed process-file job. Returns ``retry`` or ``error``.

    The session must already be rolled back. Retryable errors bump
    ``retry_counts[stage]`` and reschedule the job with backoff until
    ``max_stage_retries`` is exceeded; everything else moves the file to
    ``error`` at once. AuditWriteError is re-raised after the bookkeeping.
    """
    cfg = services.config
    payload = job.payload or {}
    tenant_id = require_tenant(payload.get("tenantId"))
    file_id = payload.get("fileId")
    stage = payload.get("stage") or "unknown"
    error_type, retryable = classify_stage_error(error)

    if retryable:
        attempts = await pipeline_db.increment_stage_retry(db, tenant_id, file_id, stage)
        if attempts <= cfg.max_stage_retries:
            delay = backoff_seconds(attempts, cfg.retry_backoff_base_seconds, cfg.retry_backoff_max_seconds)
            await pipeline_db.reschedule_job(db, job, delay, f"{error_type}: {error}")
            await db.commit()
            logger.warning(
                "[FILE %s] %s failed (%s), retry %s/%s in %.1fs: %s",
                file_id, stage, error_type, attempts, cfg.max_stage_retries, delay, error,
            )
            return "retry"
        message = f"{stage} failed after {cfg.max_stage_retries} retries ({error_type}): {error}"
    else:
        message = f"{stage} failed ({error_type}): {error}"

    marked = await pipeline_db.mark_file_error(db, tenant_id, file_id, message)
    await pipeline_db.fail_job(db, job, message)
    await db.commit()
    logger.error("[FILE %s] moved to error (marked=%s): %s", file_id, marked, message)

    batch_id = payload.get("batchId")
    if batch_id:
        await check_batch_completion(db, tenant_id, batch_id)

    if isinstance(error, AuditWriteError):
        raise error
    return "error"
