"""Reviewer actions on findings. Every status change is audited and schedules a debounced rescore."""
from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from lqa.models import Finding
from lqa.services.audit import AuditEntry, AuditWriter
from lqa.services.score_scheduler import RecomputeScheduler
from lqa.worker import db as pipeline_db
from lqa.worker.errors import ValidationError, require_tenant

logger = logging.getLogger(__name__)

REVIEW_STATUSES = ("open", "accepted", "rejected")


async def update_finding_status(
    db: AsyncSession,
    tenant_id,
    finding_id,
    new_status: str,
    *,
    audit: AuditWriter,
    scheduler: RecomputeScheduler,
    user_id: str | None = None,
) -> Finding:
    """Set review_status on one finding. Does not commit.

    Raises ValidationError for an unknown status or a finding outside this tenant.
    """
    require_tenant(tenant_id)
    if new_status not in REVIEW_STATUSES:
        raise ValidationError(f"Unknown review status {new_status!r}")

    changed = await pipeline_db.set_finding_review_status(db, tenant_id, finding_id, new_status)
    if changed is None:
        raise ValidationError(f"Finding {finding_id} not found")
    finding, old_status = changed
    if old_status == new_status:
        return finding

    await audit.write(db, AuditEntry(
        tenant_id=tenant_id,
        entity_type="finding",
        entity_id=str(finding.id),
        action="finding.status_changed",
        user_id=user_id,
        old_value={"review_status": old_status},
        new_value={"review_status": new_status},
    ))
    await scheduler.trigger(db, tenant_id, finding.file_id, finding.project_id)
    logger.info("[FILE %s] finding %s: %s -> %s", finding.file_id, finding.id, old_status, new_status)
    return finding


async def bulk_update_finding_status(
    db: AsyncSession,
    tenant_id,
    finding_ids: list,
    new_status: str,
    *,
    audit: AuditWriter,
    scheduler: RecomputeScheduler,
    user_id: str | None = None,
) -> list[Finding]:
    """Apply one status to many findings in the caller's transaction; all or nothing."""
    require_tenant(tenant_id)
    if not finding_ids:
        raise ValidationError("finding_ids must not be empty")
    updated = []
    for finding_id in dict.fromkeys(finding_ids):
        updated.append(await update_finding_status(
            db, tenant_id, finding_id, new_status, audit=audit, scheduler=scheduler, user_id=user_id,
        ))
    return updated
