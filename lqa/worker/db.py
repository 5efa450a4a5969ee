"""
Pipeline database handler.

All worker persistence goes through this module: stage transitions, finding
upserts, the job queue, the batch completion guard, score rows and the
durable recompute timers.

Every function that touches tenant data takes ``tenant_id`` and calls
:func:`require_tenant` first. The only cross-tenant reads are the queue and
sweep helpers (``claim_next_job``, ``pop_due_recompute_tasks``,
``list_stale_scores``, ``list_open_batches``), which return tenant ids so the
caller can continue scoped.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import Integer, func, select, update, delete
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from lqa.domain import CategoryDef, CustomRuleDef, FindingDraft, GlossaryEntry, SegmentRecord
from lqa.models import (
    Batch,
    CustomRule,
    Finding,
    GlossaryTerm,
    PenaltyWeight,
    PipelineJob,
    Project,
    QaFile,
    Score,
    ScoreRecomputeTask,
    Segment,
    TaxonomyCategory,
)
from lqa.worker.errors import require_tenant

logger = logging.getLogger(__name__)

TERMINAL_FILE_STATUSES = ("scored", "error")


def _utc_now_naive() -> datetime:
    """Naive UTC datetime for DB (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _uuid(value: Any) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_file(db: AsyncSession, tenant_id, file_id) -> QaFile | None:
    tid = _uuid(require_tenant(tenant_id))
    result = await db.execute(
        select(QaFile).where(QaFile.id == _uuid(file_id), QaFile.tenant_id == tid)
    )
    return result.scalar_one_or_none()


async def get_project(db: AsyncSession, tenant_id, project_id) -> Project | None:
    tid = _uuid(require_tenant(tenant_id))
    result = await db.execute(
        select(Project).where(Project.id == _uuid(project_id), Project.tenant_id == tid)
    )
    return result.scalar_one_or_none()


async def get_batch(db: AsyncSession, tenant_id, batch_id) -> Batch | None:
    tid = _uuid(require_tenant(tenant_id))
    result = await db.execute(
        select(Batch).where(Batch.id == _uuid(batch_id), Batch.tenant_id == tid)
    )
    return result.scalar_one_or_none()


def _segment_record(row: Segment) -> SegmentRecord:
    return SegmentRecord(
        id=str(row.id),
        segment_number=row.segment_number,
        source_text=row.source_text or "",
        target_text=row.target_text or "",
        source_lang=row.source_lang or "",
        target_lang=row.target_lang or "",
        confirmation_state=row.confirmation_state,
        word_count=row.word_count or 0,
    )


async def load_segments(db: AsyncSession, tenant_id, file_id) -> list[SegmentRecord]:
    """Ordered segments of one file."""
    tid = _uuid(require_tenant(tenant_id))
    result = await db.execute(
        select(Segment)
        .where(Segment.file_id == _uuid(file_id), Segment.tenant_id == tid)
        .order_by(Segment.segment_number)
    )
    return [_segment_record(r) for r in result.scalars().all()]


async def load_glossary_terms(db: AsyncSession, tenant_id, glossary_id) -> list[GlossaryEntry]:
    tid = _uuid(require_tenant(tenant_id))
    if glossary_id is None:
        return []
    result = await db.execute(
        select(GlossaryTerm)
        .where(GlossaryTerm.glossary_id == _uuid(glossary_id), GlossaryTerm.tenant_id == tid)
        .order_by(GlossaryTerm.source_term)
    )
    return [
        GlossaryEntry(source_term=t.source_term, target_term=t.target_term, case_sensitive=bool(t.case_sensitive))
        for t in result.scalars().all()
    ]


async def load_active_categories(db: AsyncSession, tenant_id) -> list[CategoryDef]:
    tid = _uuid(require_tenant(tenant_id))
    result = await db.execute(
        select(TaxonomyCategory)
        .where(TaxonomyCategory.tenant_id == tid, TaxonomyCategory.is_active.is_(True))
        .order_by(TaxonomyCategory.display_order, TaxonomyCategory.category)
    )
    return [
        CategoryDef(category=c.category, description=c.description or "", severity=c.severity)
        for c in result.scalars().all()
    ]


async def load_custom_rules(db: AsyncSession, tenant_id, project_id) -> list[CustomRuleDef]:
    tid = _uuid(require_tenant(tenant_id))
    result = await db.execute(
        select(CustomRule)
        .where(
            CustomRule.project_id == _uuid(project_id),
            CustomRule.tenant_id == tid,
            CustomRule.is_active.is_(True),
        )
        .order_by(CustomRule.name)
    )
    return [
        CustomRuleDef(id=str(r.id), name=r.name, pattern=r.pattern, description=r.description or "")
        for r in result.scalars().all()
    ]


async def load_findings_for_file(db: AsyncSession, tenant_id, file_id, *, layer: str | None = None) -> list[Finding]:
    tid = _uuid(require_tenant(tenant_id))
    stmt = select(Finding).where(Finding.file_id == _uuid(file_id), Finding.tenant_id == tid)
    if layer is not None:
        stmt = stmt.where(Finding.layer == layer)
    result = await db.execute(stmt.order_by(Finding.created_at))
    return list(result.scalars().all())


async def load_findings_with_location(
    db: AsyncSession,
    tenant_id,
    project_id,
    *,
    batch_id=None,
) -> list[tuple[Finding, str, int | None]]:
    """(finding, file_name, segment_number) for a project or one batch; used by parity."""
    tid = _uuid(require_tenant(tenant_id))
    stmt = (
        select(Finding, QaFile.file_name, Segment.segment_number)
        .join(QaFile, QaFile.id == Finding.file_id)
        .outerjoin(Segment, Segment.id == Finding.segment_id)
        .where(Finding.tenant_id == tid, QaFile.tenant_id == tid, Finding.project_id == _uuid(project_id))
    )
    if batch_id is not None:
        stmt = stmt.where(QaFile.batch_id == _uuid(batch_id))
    result = await db.execute(stmt.order_by(QaFile.file_name, Segment.segment_number))
    return [(row[0], row[1], row[2]) for row in result.all()]


async def load_penalty_weight_rows(db: AsyncSession, tenant_id) -> list[PenaltyWeight]:
    """Tenant rows and system default rows (tenant_id NULL)."""
    tid = _uuid(require_tenant(tenant_id))
    result = await db.execute(
        select(PenaltyWeight).where((PenaltyWeight.tenant_id == tid) | (PenaltyWeight.tenant_id.is_(None)))
    )
    return list(result.scalars().all())


async def count_scored_files_for_pair(db: AsyncSession, tenant_id, project_id, source_lang: str, target_lang: str) -> int:
    """Files with a computed score for this language pair (auto-pass new-pair gate)."""
    tid = _uuid(require_tenant(tenant_id))
    pair_files = (
        select(Segment.file_id)
        .where(Segment.tenant_id == tid, Segment.source_lang == source_lang, Segment.target_lang == target_lang)
        .distinct()
    )
    result = await db.execute(
        select(func.count(Score.file_id)).where(
            Score.tenant_id == tid,
            Score.project_id == _uuid(project_id),
            Score.status == "computed",
            Score.file_id.in_(pair_files),
        )
    )
    return int(result.scalar_one() or 0)


async def load_batch_files_with_scores(db: AsyncSession, tenant_id, batch_id) -> list[tuple[QaFile, Score | None]]:
    """Member files of a batch, each with its score row when one exists."""
    tid = _uuid(require_tenant(tenant_id))
    result = await db.execute(
        select(QaFile, Score)
        .outerjoin(Score, (Score.file_id == QaFile.id) & (Score.tenant_id == tid))
        .where(QaFile.batch_id == _uuid(batch_id), QaFile.tenant_id == tid)
        .order_by(QaFile.file_name)
    )
    return [(row[0], row[1]) for row in result.all()]


# ---------------------------------------------------------------------------
# Findings
# ---------------------------------------------------------------------------

async def upsert_findings(db: AsyncSession, tenant_id, project_id, drafts: list[FindingDraft]) -> int:
    """Insert drafts keyed by (file_id, dedup_key); existing keys are left untouched.

    Returns the number of newly inserted rows. Re-running a stage with the
    same drafts inserts nothing.
    """
    tid = _uuid(require_tenant(tenant_id))
    if not drafts:
        return 0
    now = _utc_now_naive()
    rows = [
        {
            "tenant_id": tid,
            "project_id": _uuid(project_id),
            "file_id": _uuid(d.file_id),
            "segment_id": _uuid(d.segment_id) if d.segment_id else None,
            "layer": d.layer,
            "stage": d.stage,
            "rule_id": d.rule_id[:200],
            "category": d.category,
            "severity": d.severity,
            "description": d.description,
            "suggested_fix": d.suggested_fix,
            "source_excerpt": d.source_excerpt,
            "target_excerpt": d.target_excerpt,
            "confidence": d.confidence,
            "ai_model": d.ai_model,
            "review_status": "open",
            "dedup_key": d.dedup_key,
            "related_file_ids": d.related_file_ids,
            "created_at": now,
            "updated_at": now,
        }
        for d in drafts
    ]
    stmt = (
        pg_insert(Finding)
        .values(rows)
        .on_conflict_do_nothing(index_elements=[Finding.file_id, Finding.dedup_key])
        .returning(Finding.id)
    )
    result = await db.execute(stmt)
    inserted = len(result.fetchall())
    logger.debug("[db] upsert_findings: %s drafts, %s inserted", len(drafts), inserted)
    return inserted


async def set_finding_review_status(db: AsyncSession, tenant_id, finding_id, new_status: str) -> tuple[Finding, str] | None:
    """Change review_status. Returns (finding, old_status) or None when not found."""
    tid = _uuid(require_tenant(tenant_id))
    result = await db.execute(
        select(Finding).where(Finding.id == _uuid(finding_id), Finding.tenant_id == tid).with_for_update()
    )
    finding = result.scalar_one_or_none()
    if finding is None:
        return None
    old_status = finding.review_status
    finding.review_status = new_status
    finding.updated_at = _utc_now_naive()
    return finding, old_status


# ---------------------------------------------------------------------------
# File stage transitions (compare-and-swap)
# ---------------------------------------------------------------------------

async def transition_file_status(
    db: AsyncSession,
    tenant_id,
    file_id,
    expected: tuple[str, ...],
    new_status: str,
    **values,
) -> bool:
    """UPDATE ... WHERE status IN expected. Returns False when another writer moved the file first."""
    tid = _uuid(require_tenant(tenant_id))
    stmt = (
        update(QaFile)
        .where(QaFile.id == _uuid(file_id), QaFile.tenant_id == tid, QaFile.status.in_(expected))
        .values(status=new_status, updated_at=_utc_now_naive(), **values)
        .returning(QaFile.id)
    )
    result = await db.execute(stmt)
    return result.first() is not None


async def mark_file_error(db: AsyncSession, tenant_id, file_id, message: str) -> bool:
    """Move a non-terminal file to ``error``. No-op (False) when already terminal."""
    tid = _uuid(require_tenant(tenant_id))
    stmt = (
        update(QaFile)
        .where(
            QaFile.id == _uuid(file_id),
            QaFile.tenant_id == tid,
            QaFile.status.notin_(TERMINAL_FILE_STATUSES),
        )
        .values(status="error", error_message=(message or "")[:2000], updated_at=_utc_now_naive())
        .returning(QaFile.id)
    )
    result = await db.execute(stmt)
    return result.first() is not None


async def increment_stage_retry(db: AsyncSession, tenant_id, file_id, stage: str) -> int:
    """Atomically bump retry_counts[stage]; returns the new count."""
    tid = _uuid(require_tenant(tenant_id))
    current = func.coalesce(QaFile.retry_counts[stage].astext.cast(Integer), 0)
    stmt = (
        update(QaFile)
        .where(QaFile.id == _uuid(file_id), QaFile.tenant_id == tid)
        .values(
            retry_counts=QaFile.retry_counts.op("||")(func.jsonb_build_object(stage, current + 1)),
            updated_at=_utc_now_naive(),
        )
        .returning(QaFile.retry_counts)
    )
    result = await db.execute(stmt)
    row = result.first()
    if row is None:
        return 0
    counts = row[0] or {}
    return int(counts.get(stage, 0))


# ---------------------------------------------------------------------------
# Job queue
# ---------------------------------------------------------------------------

async def enqueue_job(
    db: AsyncSession,
    tenant_id,
    kind: str,
    idempotency_key: str,
    payload: dict,
    *,
    run_after: datetime | None = None,
) -> bool:
    """Insert a job unless one with the same idempotency key exists. Returns True if enqueued."""
    tid = _uuid(require_tenant(tenant_id))
    now = _utc_now_naive()
    stmt = (
        pg_insert(PipelineJob)
        .values(
            tenant_id=tid,
            kind=kind,
            idempotency_key=idempotency_key,
            payload=payload,
            status="pending",
            attempts=0,
            run_after=run_after or now,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=[PipelineJob.idempotency_key])
        .returning(PipelineJob.id)
    )
    result = await db.execute(stmt)
    return result.first() is not None


async def claim_next_job(db: AsyncSession, worker_id: str) -> PipelineJob | None:
    """Lock the oldest due pending job (SKIP LOCKED) and mark it processing."""
    now = _utc_now_naive()
    result = await db.execute(
        select(PipelineJob)
        .where(PipelineJob.status == "pending", PipelineJob.run_after <= now)
        .order_by(PipelineJob.run_after, PipelineJob.created_at)
        .limit(1)
        .with_for_update(skip_locked=True)
    )
    job = result.scalar_one_or_none()
    if job is None:
        return None
    job.status = "processing"
    job.worker_id = worker_id
    job.started_at = now
    job.attempts = (job.attempts or 0) + 1
    await db.commit()
    return job


async def complete_job(db: AsyncSession, job: PipelineJob) -> None:
    job.status = "completed"
    job.completed_at = _utc_now_naive()
    job.error_message = None


async def reschedule_job(db: AsyncSession, job: PipelineJob, delay_seconds: float, error: str) -> None:
    """Put the job back in the queue after *delay_seconds* (stage retry with backoff)."""
    job.status = "pending"
    job.worker_id = None
    job.started_at = None
    job.run_after = _utc_now_naive() + timedelta(seconds=delay_seconds)
    job.error_message = (error or "")[:2000]


async def fail_job(db: AsyncSession, job: PipelineJob, error: str) -> None:
    job.status = "failed"
    job.completed_at = _utc_now_naive()
    job.error_message = (error or "")[:2000]


async def recover_stale_jobs(
    db: AsyncSession,
    timeout_minutes: float = 15.0,
    worker_id: str | None = None,
) -> int:
    """Reset jobs stuck in 'processing' for longer than *timeout_minutes*.

    This catches jobs whose workers died (crash, restart, OOM) mid-stage.
    Stages are idempotent, so the job is simply made pending again.

    Returns the number of recovered jobs.
    """
    cutoff = _utc_now_naive() - timedelta(minutes=timeout_minutes)

    stmt = (
        update(PipelineJob)
        .where(
            PipelineJob.status == "processing",
            PipelineJob.started_at < cutoff,
        )
        .values(
            status="pending",
            worker_id=None,
            started_at=None,
            error_message=f"Auto-recovered: stuck in processing >{timeout_minutes}min (by {worker_id or 'unknown'})",
        )
        .returning(PipelineJob.id, PipelineJob.idempotency_key)
    )

    result = await db.execute(stmt)
    recovered = result.fetchall()
    await db.commit()

    for job_id, key in recovered:
        logger.warning(
            "[stale-recovery] Reset job %s (%s) from processing -> pending",
            job_id, key,
        )
    return len(recovered)


# ---------------------------------------------------------------------------
# Batch guards
# ---------------------------------------------------------------------------

async def try_complete_batch(db: AsyncSession, tenant_id, batch_id):
    """Atomically set completed=true iff it is false and every member file is terminal.

    Returns (id, project_id, file_ids) for the single caller that won the
    transition, otherwise None.
    """
    tid = _uuid(require_tenant(tenant_id))
    bid = _uuid(batch_id)
    unfinished = (
        select(QaFile.id)
        .where(
            QaFile.batch_id == bid,
            QaFile.tenant_id == tid,
            QaFile.status.notin_(TERMINAL_FILE_STATUSES),
        )
        .exists()
    )
    stmt = (
        update(Batch)
        .where(Batch.id == bid, Batch.tenant_id == tid, Batch.completed.is_(False), ~unfinished)
        .values(completed=True, completed_at=_utc_now_naive())
        .returning(Batch.id, Batch.project_id, Batch.file_ids)
    )
    result = await db.execute(stmt)
    return result.first()


async def mark_cross_file_analyzed(db: AsyncSession, tenant_id, batch_id) -> bool:
    """false -> true exactly once. Returns True only for the caller that flipped it."""
    tid = _uuid(require_tenant(tenant_id))
    stmt = (
        update(Batch)
        .where(Batch.id == _uuid(batch_id), Batch.tenant_id == tid, Batch.cross_file_analyzed.is_(False))
        .values(cross_file_analyzed=True)
        .returning(Batch.id)
    )
    result = await db.execute(stmt)
    return result.first() is not None


async def list_open_batches(db: AsyncSession, limit: int = 100) -> list[tuple[UUID, UUID]]:
    """(tenant_id, batch_id) of batches not yet completed; the sweep re-runs the guard on them."""
    result = await db.execute(
        select(Batch.tenant_id, Batch.id)
        .where(Batch.completed.is_(False))
        .order_by(Batch.created_at)
        .limit(limit)
    )
    return [(row[0], row[1]) for row in result.all()]


# ---------------------------------------------------------------------------
# Scores and recompute timers
# ---------------------------------------------------------------------------

async def upsert_score(db: AsyncSession, tenant_id, file_id, project_id, values: dict) -> None:
    tid = _uuid(require_tenant(tenant_id))
    row = {"file_id": _uuid(file_id), "tenant_id": tid, "project_id": _uuid(project_id), **values}
    stmt = pg_insert(Score).values(**row)
    stmt = stmt.on_conflict_do_update(
        index_elements=[Score.file_id],
        set_={k: stmt.excluded[k] for k in values},
        where=Score.tenant_id == tid,
    )
    await db.execute(stmt)


async def mark_score_stale(db: AsyncSession, tenant_id, file_id, project_id) -> None:
    tid = _uuid(require_tenant(tenant_id))
    stmt = pg_insert(Score).values(
        file_id=_uuid(file_id), tenant_id=tid, project_id=_uuid(project_id), status="stale",
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[Score.file_id],
        set_={"status": "stale"},
        where=Score.tenant_id == tid,
    )
    await db.execute(stmt)


async def list_stale_scores(db: AsyncSession, limit: int = 100) -> list[tuple[UUID, UUID]]:
    """(tenant_id, file_id) of every stale score, regardless of pending timers."""
    result = await db.execute(
        select(Score.tenant_id, Score.file_id).where(Score.status == "stale").limit(limit)
    )
    return [(row[0], row[1]) for row in result.all()]


async def upsert_recompute_task(db: AsyncSession, tenant_id, file_id, fire_at: datetime) -> None:
    """Schedule (or replace) the single pending recompute for *file_id*."""
    tid = _uuid(require_tenant(tenant_id))
    stmt = pg_insert(ScoreRecomputeTask).values(
        file_id=_uuid(file_id), tenant_id=tid, fire_at=fire_at, generation=1, created_at=_utc_now_naive(),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[ScoreRecomputeTask.file_id],
        set_={
            "fire_at": stmt.excluded.fire_at,
            "generation": ScoreRecomputeTask.generation + 1,
        },
        where=ScoreRecomputeTask.tenant_id == tid,
    )
    await db.execute(stmt)


async def pop_due_recompute_tasks(db: AsyncSession, now: datetime, limit: int = 1) -> list[tuple[UUID, UUID]]:
    """Delete and return (tenant_id, file_id) of tasks whose quiet window has elapsed."""
    due = (
        select(ScoreRecomputeTask.file_id)
        .where(ScoreRecomputeTask.fire_at <= now)
        .order_by(ScoreRecomputeTask.fire_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .scalar_subquery()
    )
    stmt = (
        delete(ScoreRecomputeTask)
        .where(ScoreRecomputeTask.file_id.in_(due))
        .returning(ScoreRecomputeTask.tenant_id, ScoreRecomputeTask.file_id)
    )
    result = await db.execute(stmt)
    return [(row[0], row[1]) for row in result.fetchall()]


# ---------------------------------------------------------------------------
# Rollback helper
# ---------------------------------------------------------------------------

async def safe_rollback(db: AsyncSession) -> None:
    """Rollback; never raises."""
    try:
        await db.rollback()
    except Exception as exc:
        logger.error("[db] rollback failed: %s", exc, exc_info=True)
