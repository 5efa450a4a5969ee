"""Audit writer: records who changed what, in the caller's transaction.

A failed audit write raises :class:`AuditWriteError`; callers must not
continue past it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from lqa.models import AuditLog
from lqa.worker.errors import AuditWriteError, require_tenant

logger = logging.getLogger(__name__)


@dataclass
class AuditEntry:
    tenant_id: Any
    entity_type: str
    entity_id: str
    action: str
    user_id: str | None = None
    old_value: dict | None = None
    new_value: dict | None = None


class AuditWriter:
    """Writes AuditLog rows. Constructed once per process and passed to callers."""

    async def write(self, db: AsyncSession, entry: AuditEntry) -> None:
        tenant_id = require_tenant(entry.tenant_id)
        try:
            db.add(AuditLog(
                tenant_id=UUID(str(tenant_id)),
                user_id=entry.user_id,
                entity_type=entry.entity_type,
                entity_id=str(entry.entity_id),
                action=entry.action,
                old_value=entry.old_value,
                new_value=entry.new_value,
            ))
            await db.flush()
        except Exception as exc:
            logger.error(
                "[audit] write failed for %s %s (%s): %s",
                entry.entity_type, entry.entity_id, entry.action, exc, exc_info=True,
            )
            raise AuditWriteError(f"Audit write failed for {entry.action}: {exc}") from exc
