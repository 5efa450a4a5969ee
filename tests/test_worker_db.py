"""Unit tests for lqa.worker.db (statement shape and return handling)."""
from __future__ import annotations

from datetime import datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from sqlalchemy.dialects import postgresql

from lqa.domain import FindingDraft
from lqa.worker import db as pipeline_db
from lqa.worker.errors import TenantScopeError

TENANT = str(uuid4())


def _db(first=None, fetchall=None, scalar=None):
    result = MagicMock()
    result.first.return_value = first
    result.fetchall.return_value = fetchall or []
    result.all.return_value = fetchall or []
    result.scalar_one_or_none.return_value = scalar
    db = AsyncMock()
    db.execute = AsyncMock(return_value=result)
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    return db


def _compiled(db):
    stmt = db.execute.call_args[0][0]
    return stmt.compile(dialect=postgresql.dialect())


def _sql(db) -> str:
    return str(_compiled(db))


# ---------------------------------------------------------------------------
# Tenant scoping
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("tenant", [None, "", "   "])
async def test_tenant_scoped_calls_require_tenant(tenant):
    db = _db()
    with pytest.raises(TenantScopeError):
        await pipeline_db.transition_file_status(db, tenant, uuid4(), ("parsed",), "l1")
    db.execute.assert_not_awaited()


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_transition_is_compare_and_swap():
    db = _db(first=(uuid4(),))
    assert await pipeline_db.transition_file_status(db, TENANT, uuid4(), ("parsed",), "l1") is True
    sql = _sql(db)
    assert sql.startswith("UPDATE qa_files")
    assert "qa_files.status IN" in sql
    assert "RETURNING" in sql


@pytest.mark.asyncio
async def test_transition_lost_race_returns_false():
    db = _db(first=None)
    assert await pipeline_db.transition_file_status(db, TENANT, uuid4(), ("l1",), "l2") is False


@pytest.mark.asyncio
async def test_mark_file_error_skips_terminal_files():
    db = _db(first=None)
    assert await pipeline_db.mark_file_error(db, TENANT, uuid4(), "boom") is False
    assert "NOT IN" in _sql(db)


@pytest.mark.asyncio
async def test_increment_stage_retry_reads_new_count():
    db = _db(first=({"l2": 2, "l1": 1},))
    assert await pipeline_db.increment_stage_retry(db, TENANT, uuid4(), "l2") == 2


# ---------------------------------------------------------------------------
# Findings
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_upsert_findings_empty_is_noop():
    db = _db()
    assert await pipeline_db.upsert_findings(db, TENANT, uuid4(), []) == 0
    db.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_upsert_findings_ignores_conflicts():
    file_id = str(uuid4())
    drafts = [
        FindingDraft(file_id=file_id, stage="l1", layer="L1", rule_id="double_space",
                     category="spacing", severity="minor", description="d", segment_id=str(uuid4())),
        FindingDraft(file_id=file_id, stage="l1", layer="L1", rule_id="untranslated",
                     category="completeness", severity="major", description="d", segment_id=str(uuid4())),
    ]
    db = _db(fetchall=[(uuid4(),)])
    assert await pipeline_db.upsert_findings(db, TENANT, uuid4(), drafts) == 1
    assert "ON CONFLICT (file_id, dedup_key) DO NOTHING" in _sql(db)


# ---------------------------------------------------------------------------
# Job queue
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_enqueue_job_is_idempotent_on_key():
    db = _db(first=(uuid4(),))
    assert await pipeline_db.enqueue_job(db, TENANT, "process_file", "process-file:x:l1", {}) is True
    assert "ON CONFLICT (idempotency_key) DO NOTHING" in _sql(db)

    db = _db(first=None)
    assert await pipeline_db.enqueue_job(db, TENANT, "process_file", "process-file:x:l1", {}) is False


@pytest.mark.asyncio
async def test_claim_next_job_uses_skip_locked_and_marks_processing():
    job = SimpleNamespace(status="pending", worker_id=None, started_at=None, attempts=0)
    db = _db(scalar=job)
    claimed = await pipeline_db.claim_next_job(db, "worker-1")
    assert claimed is job
    assert "FOR UPDATE SKIP LOCKED" in _sql(db)
    assert (job.status, job.worker_id, job.attempts) == ("processing", "worker-1", 1)
    assert isinstance(job.started_at, datetime)
    db.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_claim_next_job_empty_queue():
    db = _db(scalar=None)
    assert await pipeline_db.claim_next_job(db, "worker-1") is None
    db.commit.assert_not_awaited()


@pytest.mark.asyncio
async def test_reschedule_job_puts_it_back_later():
    job = SimpleNamespace(status="processing", worker_id="w", started_at=datetime(2026, 1, 1), run_after=None)
    before = pipeline_db._utc_now_naive()
    await pipeline_db.reschedule_job(AsyncMock(), job, 4.0, "timeout")
    assert job.status == "pending"
    assert job.worker_id is None and job.started_at is None
    assert (job.run_after - before).total_seconds() >= 4.0
    assert job.error_message == "timeout"


@pytest.mark.asyncio
async def test_fail_job_truncates_message():
    job = SimpleNamespace()
    await pipeline_db.fail_job(AsyncMock(), job, "x" * 5000)
    assert job.status == "failed"
    assert len(job.error_message) == 2000


# ---------------------------------------------------------------------------
# Batch guards
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_try_complete_batch_guard_shape():
    db = _db(first=None)
    assert await pipeline_db.try_complete_batch(db, TENANT, uuid4()) is None
    sql = _sql(db)
    assert sql.startswith("UPDATE batches")
    assert "NOT (EXISTS" in sql
    assert "batches.completed IS false" in sql


@pytest.mark.asyncio
async def test_mark_cross_file_analyzed_flips_once():
    db = _db(first=(uuid4(),))
    assert await pipeline_db.mark_cross_file_analyzed(db, TENANT, uuid4()) is True
    db = _db(first=None)
    assert await pipeline_db.mark_cross_file_analyzed(db, TENANT, uuid4()) is False


# ---------------------------------------------------------------------------
# Scores and recompute timers
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_upsert_recompute_task_replaces_fire_at():
    db = _db()
    await pipeline_db.upsert_recompute_task(db, TENANT, uuid4(), datetime(2026, 1, 1, 12, 0, 0))
    sql = _sql(db)
    assert sql.startswith("INSERT INTO score_recompute_tasks")
    assert "ON CONFLICT (file_id) DO UPDATE SET fire_at = excluded.fire_at" in sql
    assert "score_recompute_tasks.generation +" in sql
    assert "WHERE score_recompute_tasks.tenant_id =" in sql


@pytest.mark.asyncio
async def test_pop_due_recompute_tasks_deletes_locked_due_rows():
    tenant, file_id = uuid4(), uuid4()
    db = _db(fetchall=[(tenant, file_id)])
    assert await pipeline_db.pop_due_recompute_tasks(db, datetime(2026, 1, 1)) == [(tenant, file_id)]
    sql = _sql(db)
    assert sql.startswith("DELETE FROM score_recompute_tasks")
    assert "score_recompute_tasks.file_id IN" in sql
    assert "FOR UPDATE SKIP LOCKED" in sql
    assert "RETURNING score_recompute_tasks.tenant_id, score_recompute_tasks.file_id" in sql


@pytest.mark.asyncio
async def test_mark_score_stale_upserts_stale_status():
    db = _db()
    await pipeline_db.mark_score_stale(db, TENANT, uuid4(), uuid4())
    compiled = _compiled(db)
    sql = str(compiled)
    assert sql.startswith("INSERT INTO scores")
    assert "ON CONFLICT (file_id) DO UPDATE SET status = " in sql
    assert compiled.params["status"] == "stale"


@pytest.mark.asyncio
async def test_list_stale_scores_filters_on_status():
    tenant, file_id = uuid4(), uuid4()
    db = _db(fetchall=[(tenant, file_id)])
    assert await pipeline_db.list_stale_scores(db) == [(tenant, file_id)]
    compiled = _compiled(db)
    assert "WHERE scores.status = " in str(compiled)
    assert "stale" in compiled.params.values()


@pytest.mark.asyncio
async def test_upsert_score_updates_only_given_columns():
    db = _db()
    await pipeline_db.upsert_score(db, TENANT, uuid4(), uuid4(), {"mqm_score": 90.0, "status": "calculated"})
    sql = _sql(db)
    assert "ON CONFLICT (file_id) DO UPDATE SET mqm_score = excluded.mqm_score, status = excluded.status" in sql
    assert "WHERE scores.tenant_id =" in sql


# ---------------------------------------------------------------------------
# Rollback helper
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_safe_rollback_never_raises():
    db = _db()
    db.rollback = AsyncMock(side_effect=RuntimeError("gone"))
    await pipeline_db.safe_rollback(db)
