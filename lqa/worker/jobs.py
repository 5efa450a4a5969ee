"""Job kinds, idempotency keys and enqueue helpers for the pipeline queue."""
from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from lqa.worker import db as pipeline_db

JOB_PROCESS_FILE = "process_file"
JOB_BATCH_STARTED = "batch_started"
JOB_BATCH_COMPLETED = "batch_completed"


def process_file_key(file_id, stage: str) -> str:
    return f"process-file:{file_id}:{stage}"


def batch_started_key(batch_id) -> str:
    return f"batch-started:{batch_id}"


def batch_completed_key(batch_id) -> str:
    return f"batch-completed:{batch_id}"


async def enqueue_process_file(
    db: AsyncSession,
    tenant_id,
    file_id,
    project_id,
    stage: str,
    *,
    mode: str,
    batch_id=None,
    user_id: str | None = None,
) -> bool:
    payload = {
        "fileId": str(file_id),
        "projectId": str(project_id),
        "tenantId": str(tenant_id),
        "stage": stage,
        "mode": mode,
        "batchId": str(batch_id) if batch_id else None,
        "userId": user_id,
    }
    return await pipeline_db.enqueue_job(db, tenant_id, JOB_PROCESS_FILE, process_file_key(file_id, stage), payload)


async def enqueue_batch_started(db: AsyncSession, tenant_id, batch_id, project_id, file_ids: list, mode: str) -> bool:
    payload = {
        "batchId": str(batch_id),
        "projectId": str(project_id),
        "tenantId": str(tenant_id),
        "fileIds": [str(f) for f in file_ids],
        "mode": mode,
    }
    return await pipeline_db.enqueue_job(db, tenant_id, JOB_BATCH_STARTED, batch_started_key(batch_id), payload)


async def enqueue_batch_completed(db: AsyncSession, tenant_id, batch_id, project_id, file_ids: list) -> bool:
    payload = {
        "batchId": str(batch_id),
        "projectId": str(project_id),
        "tenantId": str(tenant_id),
        "fileIds": [str(f) for f in file_ids],
    }
    return await pipeline_db.enqueue_job(db, tenant_id, JOB_BATCH_COMPLETED, batch_completed_key(batch_id), payload)
