"""
Debounced score recompute.

Every trigger replaces the file's single pending ``score_recompute_tasks`` row
with ``fire_at = now + window`` and marks the score stale. The worker calls
``fire_due`` on every poll; each due task is popped and the score recomputed
from the findings as they are at that moment, so a burst of N triggers
inside the window costs one recomputation. ``reconcile`` recomputes every
stale score regardless of timers, which covers lost or crashed tasks.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lqa.services.audit import AuditWriter
from lqa.services.scoring import score_file
from lqa.worker import db as pipeline_db
from lqa.worker.errors import require_tenant

logger = logging.getLogger(__name__)


def _utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class RecomputeScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        audit: AuditWriter,
        *,
        debounce_ms: int = 500,
        default_threshold: float = 95.0,
        new_pair_review_count: int = 50,
    ):
        self._session_factory = session_factory
        self._audit = audit
        self.debounce_ms = debounce_ms
        self.default_threshold = default_threshold
        self.new_pair_review_count = new_pair_review_count

    async def trigger(self, db: AsyncSession, tenant_id, file_id, project_id, *, now: datetime | None = None) -> datetime:
        """Schedule a recompute in the caller's transaction. Returns the fire time."""
        require_tenant(tenant_id)
        fire_at = (now or _utc_now_naive()) + timedelta(milliseconds=self.debounce_ms)
        await pipeline_db.upsert_recompute_task(db, tenant_id, file_id, fire_at)
        await pipeline_db.mark_score_stale(db, tenant_id, file_id, project_id)
        logger.debug("[FILE %s] score recompute scheduled for %s", file_id, fire_at.isoformat())
        return fire_at

    async def _recompute(self, db: AsyncSession, tenant_id, file_id) -> None:
        await score_file(
            db,
            tenant_id,
            file_id,
            audit=self._audit,
            default_threshold=self.default_threshold,
            new_pair_review_count=self.new_pair_review_count,
        )

    async def fire_due(self, *, now: datetime | None = None, limit: int = 50) -> int:
        """Pop and run due tasks, one session (and transaction) per task. Returns how many fired."""
        fired = 0
        while fired < limit:
            async with self._session_factory() as db:
                due = await pipeline_db.pop_due_recompute_tasks(db, now or _utc_now_naive(), limit=1)
                if not due:
                    return fired
                tenant_id, file_id = due[0]
                try:
                    await self._recompute(db, tenant_id, file_id)
                    await db.commit()
                except Exception as e:
                    # The task row delete is rolled back too, so it fires again next poll.
                    logger.error("[FILE %s] debounced recompute failed: %s", file_id, e, exc_info=True)
                    await pipeline_db.safe_rollback(db)
                    break
                fired += 1
        return fired

    async def reconcile(self, *, limit: int = 100) -> int:
        """Recompute every stale score. Returns how many were recomputed."""
        async with self._session_factory() as db:
            stale = await pipeline_db.list_stale_scores(db, limit=limit)
        done = 0
        for tenant_id, file_id in stale:
            async with self._session_factory() as db:
                try:
                    await self._recompute(db, tenant_id, file_id)
                    await db.commit()
                    done += 1
                except Exception as e:
                    logger.error("[FILE %s] stale score reconcile failed: %s", file_id, e, exc_info=True)
                    await pipeline_db.safe_rollback(db)
        if stale:
            logger.info("[reconcile] recomputed %s of %s stale scores", done, len(stale))
        return done
