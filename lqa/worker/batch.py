"""
Batch tracker: fan-out on ``batch-started``, the exactly-once completion
guard, and the single cross-file pass on ``batch-completed``.
"""
from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from lqa.services.audit import AuditEntry
from lqa.services.cross_file import analyze_batch
from lqa.worker import db as pipeline_db
from lqa.worker.context import PipelineServices
from lqa.worker.errors import ValidationError, require_tenant
from lqa.worker.jobs import enqueue_batch_completed, enqueue_process_file

logger = logging.getLogger(__name__)


async def check_batch_completion(db: AsyncSession, tenant_id, batch_id) -> bool:
    """Mark the batch completed and enqueue ``batch-completed`` if every member is terminal.

    The conditional UPDATE admits exactly one caller; everybody else gets False.
    Commits on success.
    """
    row = await pipeline_db.try_complete_batch(db, tenant_id, batch_id)
    if row is None:
        return False
    _, project_id, file_ids = row
    await enqueue_batch_completed(db, tenant_id, batch_id, project_id, list(file_ids or []))
    await db.commit()
    logger.info("[batch %s] all %s files terminal, batch-completed enqueued", batch_id, len(file_ids or []))
    return True


async def start_batch(db: AsyncSession, services: PipelineServices, payload: dict) -> int:
    """Enqueue the first stage for every member file. Returns how many jobs were new."""
    tenant_id = require_tenant(payload.get("tenantId"))
    batch_id = payload.get("batchId")
    batch = await pipeline_db.get_batch(db, tenant_id, batch_id)
    if batch is None:
        raise ValidationError(f"Batch {batch_id} not found")

    file_ids = payload.get("fileIds") or list(batch.file_ids or [])
    mode = payload.get("mode") or batch.mode or "economy"
    enqueued = 0
    for file_id in file_ids:
        if await enqueue_process_file(
            db, tenant_id, file_id, batch.project_id, "parsed", mode=mode, batch_id=batch.id,
        ):
            enqueued += 1
    await db.commit()
    logger.info("[batch %s] started: %s files, %s jobs enqueued (%s mode)", batch_id, len(file_ids), enqueued, mode)

    if not file_ids:
        await check_batch_completion(db, tenant_id, batch_id)
    return enqueued


async def run_cross_file_analysis(db: AsyncSession, services: PipelineServices, payload: dict) -> int:
    """The single cross-file pass for a completed batch. Returns the number of cross-file findings.

    Flag flip, finding upserts, recompute triggers and the audit entry share
    one transaction; a duplicate delivery loses the flag CAS and does nothing.
    """
    tenant_id = require_tenant(payload.get("tenantId"))
    batch_id = payload.get("batchId")
    batch = await pipeline_db.get_batch(db, tenant_id, batch_id)
    if batch is None:
        raise ValidationError(f"Batch {batch_id} not found")

    if not await pipeline_db.mark_cross_file_analyzed(db, tenant_id, batch_id):
        await pipeline_db.safe_rollback(db)
        logger.info("[batch %s] cross-file analysis already done, skipping", batch_id)
        return 0

    project = await pipeline_db.get_project(db, tenant_id, batch.project_id)
    file_ids = [str(f) for f in (payload.get("fileIds") or batch.file_ids or [])]
    segments_by_file = {
        file_id: await services.segment_source.get_segments(db, tenant_id, file_id)
        for file_id in file_ids
    }
    glossary_id = project.glossary_id if project is not None else None
    terms = await services.glossary_source.get_terms(db, tenant_id, glossary_id)

    findings = analyze_batch(segments_by_file, terms)
    drafts = [draft for finding in findings for draft in finding.to_drafts()]
    inserted = await pipeline_db.upsert_findings(db, tenant_id, batch.project_id, drafts)

    affected = sorted({d.file_id for d in drafts})
    for file_id in affected:
        await services.scheduler.trigger(db, tenant_id, file_id, batch.project_id)

    await services.audit.write(db, AuditEntry(
        tenant_id=tenant_id,
        entity_type="batch",
        entity_id=str(batch_id),
        action="batch.cross_file_analyzed",
        new_value={"findings": len(findings), "inserted": inserted, "affected_files": affected},
    ))
    await db.commit()
    logger.info(
        "[batch %s] cross-file: %s findings, %s rows inserted, %s files rescored",
        batch_id, len(findings), inserted, len(affected),
    )
    return len(findings)
