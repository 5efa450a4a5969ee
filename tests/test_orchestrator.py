"""Unit tests for lqa.worker.orchestrator (stage state machine and failure policy)."""
from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest

from lqa.domain import SegmentRecord
from lqa.services.ai_tiers import ScreeningResult
from lqa.worker.config import WorkerConfig
from lqa.worker.context import StageContext
from lqa.worker.errors import AuditWriteError, PersistenceError, ValidationError
from lqa.worker.orchestrator import (
    _stage_l1,
    _stage_l2,
    _stage_l3,
    advance,
    handle_stage_failure,
    next_stage,
    predecessors,
    process_file_event,
)

TENANT = str(uuid4())


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _mock_db():
    db = AsyncMock()
    db.add = MagicMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    return db


def _segments():
    return [
        SegmentRecord(id=str(uuid4()), segment_number=1, source_text="Hello {name}", target_text="Bonjour",
                      source_lang="en-US", target_lang="fr-FR"),
        SegmentRecord(id=str(uuid4()), segment_number=2, source_text="Bye.", target_text="Au revoir.",
                      source_lang="en-US", target_lang="fr-FR"),
    ]


def _services(segments=None, cfg=None):
    return SimpleNamespace(
        config=cfg or WorkerConfig(),
        segment_source=SimpleNamespace(get_segments=AsyncMock(return_value=segments or _segments())),
        glossary_source=SimpleNamespace(get_terms=AsyncMock(return_value=[])),
        taxonomy_source=SimpleNamespace(
            get_active_categories=AsyncMock(return_value=[]),
            get_custom_rules=AsyncMock(return_value=[]),
        ),
        tier_client=MagicMock(),
        audit=MagicMock(write=AsyncMock()),
        scheduler=MagicMock(trigger=AsyncMock()),
    )


def _project(mode="economy"):
    return SimpleNamespace(
        id=uuid4(), processing_mode=mode, glossary_id=None, suppressed_categories=[],
        pinned_l2_model=None, pinned_l3_model=None, auto_pass_threshold=95.0,
    )


def _file(status, project, batch_id=None):
    return SimpleNamespace(
        id=uuid4(), status=status, project_id=project.id, batch_id=batch_id,
        escalated_segment_ids=[], escalation_hints={},
    )


def _ctx(status="parsed", mode="economy", db=None, services=None, batch_id=None):
    project = _project(mode)
    return StageContext(
        db=db or _mock_db(),
        services=services or _services(),
        tenant_id=TENANT,
        file=_file(status, project),
        project=project,
        mode=mode,
        batch_id=batch_id,
    )


# ---------------------------------------------------------------------------
# Stage order
# ---------------------------------------------------------------------------

def test_next_stage_economy_and_thorough():
    assert next_stage("uploaded") == "parsed"
    assert next_stage("parsing") == "parsed"
    assert next_stage("parsed") == "l1"
    assert next_stage("l2", "economy") == "scored"
    assert next_stage("l2", "thorough") == "l3"
    assert next_stage("l3", "thorough") == "scored"
    assert next_stage("scored") is None
    assert next_stage("error") is None


def test_predecessors():
    assert predecessors("parsed") == ("uploaded", "parsing")
    assert predecessors("l1") == ("parsed",)
    assert predecessors("scored", "economy") == ("l2",)
    assert predecessors("scored", "thorough") == ("l3",)


# ---------------------------------------------------------------------------
# advance
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_advance_is_noop_when_stage_already_done():
    ctx = _ctx(status="l2")
    handler = AsyncMock(return_value={})
    with patch.dict("lqa.worker.orchestrator.STAGE_HANDLERS", {"l1": handler}), \
         patch("lqa.worker.db.transition_file_status", new_callable=AsyncMock) as mock_cas:
        assert await advance(ctx, "l1") is False
    handler.assert_not_awaited()
    mock_cas.assert_not_awaited()


@pytest.mark.asyncio
async def test_advance_noop_for_file_in_error():
    ctx = _ctx(status="error")
    with patch("lqa.worker.db.transition_file_status", new_callable=AsyncMock) as mock_cas:
        assert await advance(ctx, "l1") is False
    mock_cas.assert_not_awaited()


@pytest.mark.asyncio
async def test_advance_requires_predecessor():
    with pytest.raises(ValidationError):
        await advance(_ctx(status="parsed"), "l2")


@pytest.mark.asyncio
async def test_advance_rejects_l3_in_economy_mode():
    with pytest.raises(ValidationError):
        await advance(_ctx(status="l2", mode="economy"), "l3")


@pytest.mark.asyncio
async def test_advance_moves_status_and_enqueues_next_stage():
    ctx = _ctx(status="parsed")
    with patch.dict("lqa.worker.orchestrator.STAGE_HANDLERS", {"l1": AsyncMock(return_value={})}), \
         patch("lqa.worker.db.transition_file_status", new_callable=AsyncMock, return_value=True) as mock_cas, \
         patch("lqa.worker.orchestrator.enqueue_process_file", new_callable=AsyncMock) as mock_enqueue:
        assert await advance(ctx, "l1") is True
    args = mock_cas.call_args[0]
    assert args[3:] == (("parsed",), "l1")
    assert mock_enqueue.call_args[0][4] == "l2"
    ctx.db.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_advance_from_uploaded_claims_parsing_first():
    ctx = _ctx(status="uploaded")
    with patch.dict("lqa.worker.orchestrator.STAGE_HANDLERS", {"parsed": AsyncMock(return_value={})}), \
         patch("lqa.worker.db.transition_file_status", new_callable=AsyncMock, return_value=True) as mock_cas, \
         patch("lqa.worker.orchestrator.enqueue_process_file", new_callable=AsyncMock):
        assert await advance(ctx, "parsed") is True
    transitions = [c[0][3:5] for c in mock_cas.call_args_list]
    assert transitions == [(("uploaded",), "parsing"), (("parsing",), "parsed")]
    assert ctx.db.commit.await_count == 2


@pytest.mark.asyncio
async def test_advance_lost_race_rolls_back():
    ctx = _ctx(status="l1")
    with patch.dict("lqa.worker.orchestrator.STAGE_HANDLERS", {"l2": AsyncMock(return_value={})}), \
         patch("lqa.worker.db.transition_file_status", new_callable=AsyncMock, return_value=False), \
         patch("lqa.worker.orchestrator.enqueue_process_file", new_callable=AsyncMock) as mock_enqueue:
        assert await advance(ctx, "l2") is False
    mock_enqueue.assert_not_awaited()
    ctx.db.rollback.assert_awaited_once()
    ctx.db.commit.assert_not_awaited()


@pytest.mark.asyncio
async def test_parsed_stage_without_segments_is_validation_error():
    ctx = _ctx(status="parsing", services=_services())
    ctx.services.segment_source.get_segments = AsyncMock(return_value=[])
    with patch("lqa.worker.db.transition_file_status", new_callable=AsyncMock, return_value=True):
        with pytest.raises(ValidationError):
            await advance(ctx, "parsed")


# ---------------------------------------------------------------------------
# Stage work
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_l1_rerun_inserts_nothing_new():
    stored: set[str] = set()

    async def fake_upsert(db, tenant_id, project_id, drafts):
        new = {d.dedup_key for d in drafts} - stored
        stored.update(new)
        return len(new)

    ctx = _ctx(status="parsed")
    with patch("lqa.worker.db.upsert_findings", side_effect=fake_upsert) as mock_upsert:
        await _stage_l1(ctx)
        first_keys = [d.dedup_key for d in mock_upsert.call_args[0][3]]
        await _stage_l1(ctx)
        second_keys = [d.dedup_key for d in mock_upsert.call_args[0][3]]

    assert first_keys and first_keys == second_keys
    assert len(stored) == len(first_keys)


@pytest.mark.asyncio
async def test_l2_stage_hands_escalations_to_the_status_update():
    ctx = _ctx(status="l1")
    screening = ScreeningResult(findings=[], escalated_segment_ids=["s1", "s2"], hints={"s1": "accuracy:"})
    with patch("lqa.worker.db.load_findings_for_file", new_callable=AsyncMock, return_value=[]), \
         patch("lqa.worker.orchestrator.run_l2_screening", new_callable=AsyncMock, return_value=screening), \
         patch("lqa.worker.db.upsert_findings", new_callable=AsyncMock, return_value=0):
        values = await _stage_l2(ctx)
    assert values == {"escalated_segment_ids": ["s1", "s2"], "escalation_hints": {"s1": "accuracy:"}}


@pytest.mark.asyncio
async def test_l3_receives_hints_stored_by_l2():
    ctx = _ctx(status="l2", mode="thorough")
    ctx.file.escalated_segment_ids = ["s1"]
    ctx.file.escalation_hints = {"s1": "accuracy:"}
    with patch("lqa.worker.db.load_findings_for_file", new_callable=AsyncMock) as mock_l2_rows, \
         patch("lqa.worker.orchestrator.run_l3_review", new_callable=AsyncMock, return_value=[]) as mock_l3, \
         patch("lqa.worker.db.upsert_findings", new_callable=AsyncMock, return_value=0):
        await _stage_l3(ctx)
    assert mock_l3.call_args[1]["hints"] == {"s1": "accuracy:"}
    mock_l2_rows.assert_not_awaited()


@pytest.mark.asyncio
async def test_l3_hints_fall_back_to_l2_findings():
    ctx = _ctx(status="l2", mode="thorough")
    ctx.file.escalated_segment_ids = ["s1", "s2"]
    ctx.file.escalation_hints = {"s1": "accuracy:"}
    row = SimpleNamespace(segment_id="s2", category="fluency", description="Stiff wording")
    with patch("lqa.worker.db.load_findings_for_file", new_callable=AsyncMock, return_value=[row]), \
         patch("lqa.worker.orchestrator.run_l3_review", new_callable=AsyncMock, return_value=[]) as mock_l3, \
         patch("lqa.worker.db.upsert_findings", new_callable=AsyncMock, return_value=0):
        await _stage_l3(ctx)
    assert mock_l3.call_args[1]["hints"] == {"s1": "accuracy:", "s2": "fluency: Stiff wording"}


# ---------------------------------------------------------------------------
# process_file_event
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_final_stage_checks_batch_completion():
    project = _project()
    batch_id = str(uuid4())
    qa_file = _file("l2", project, batch_id=batch_id)
    db = _mock_db()
    payload = {"tenantId": TENANT, "fileId": str(qa_file.id), "stage": "scored", "mode": "economy", "batchId": batch_id}
    with patch("lqa.worker.db.get_file", new_callable=AsyncMock, return_value=qa_file), \
         patch("lqa.worker.db.get_project", new_callable=AsyncMock, return_value=project), \
         patch.dict("lqa.worker.orchestrator.STAGE_HANDLERS", {"scored": AsyncMock(return_value={})}), \
         patch("lqa.worker.db.transition_file_status", new_callable=AsyncMock, return_value=True), \
         patch("lqa.worker.orchestrator.enqueue_process_file", new_callable=AsyncMock) as mock_enqueue, \
         patch("lqa.worker.orchestrator.check_batch_completion", new_callable=AsyncMock) as mock_check:
        stage = await process_file_event(db, _services(), payload)
    assert stage == "scored"
    mock_enqueue.assert_not_awaited()
    mock_check.assert_awaited_once_with(db, TENANT, batch_id)


@pytest.mark.asyncio
async def test_replay_on_terminal_file_rechecks_batch_only():
    project = _project()
    batch_id = str(uuid4())
    qa_file = _file("scored", project, batch_id=batch_id)
    payload = {"tenantId": TENANT, "fileId": str(qa_file.id), "stage": "scored", "batchId": batch_id}
    with patch("lqa.worker.db.get_file", new_callable=AsyncMock, return_value=qa_file), \
         patch("lqa.worker.db.get_project", new_callable=AsyncMock, return_value=project), \
         patch("lqa.worker.db.transition_file_status", new_callable=AsyncMock) as mock_cas, \
         patch("lqa.worker.orchestrator.check_batch_completion", new_callable=AsyncMock) as mock_check:
        await process_file_event(_mock_db(), _services(), payload)
    mock_cas.assert_not_awaited()
    mock_check.assert_awaited_once()


@pytest.mark.asyncio
async def test_intermediate_stage_does_not_check_batch():
    project = _project()
    qa_file = _file("parsed", project, batch_id=uuid4())
    payload = {"tenantId": TENANT, "fileId": str(qa_file.id), "stage": "l1"}
    with patch("lqa.worker.db.get_file", new_callable=AsyncMock, return_value=qa_file), \
         patch("lqa.worker.db.get_project", new_callable=AsyncMock, return_value=project), \
         patch.dict("lqa.worker.orchestrator.STAGE_HANDLERS", {"l1": AsyncMock(return_value={})}), \
         patch("lqa.worker.db.transition_file_status", new_callable=AsyncMock, return_value=True), \
         patch("lqa.worker.orchestrator.enqueue_process_file", new_callable=AsyncMock), \
         patch("lqa.worker.orchestrator.check_batch_completion", new_callable=AsyncMock) as mock_check:
        await process_file_event(_mock_db(), _services(), payload)
    mock_check.assert_not_awaited()


@pytest.mark.asyncio
async def test_missing_tenant_raises():
    from lqa.worker.errors import TenantScopeError

    with pytest.raises(TenantScopeError):
        await process_file_event(_mock_db(), _services(), {"fileId": str(uuid4()), "stage": "l1"})


@pytest.mark.asyncio
async def test_unknown_file_is_validation_error():
    with patch("lqa.worker.db.get_file", new_callable=AsyncMock, return_value=None):
        with pytest.raises(ValidationError):
            await process_file_event(_mock_db(), _services(), {"tenantId": TENANT, "fileId": str(uuid4())})


# ---------------------------------------------------------------------------
# handle_stage_failure
# ---------------------------------------------------------------------------

def _job(stage="l2", batch_id=None):
    return SimpleNamespace(
        id=uuid4(),
        attempts=1,
        payload={"tenantId": TENANT, "fileId": str(uuid4()), "stage": stage, "batchId": batch_id},
    )


@pytest.mark.asyncio
async def test_transient_failure_is_rescheduled_with_backoff():
    db = _mock_db()
    job = _job()
    with patch("lqa.worker.db.increment_stage_retry", new_callable=AsyncMock, return_value=2) as mock_inc, \
         patch("lqa.worker.db.reschedule_job", new_callable=AsyncMock) as mock_resched, \
         patch("lqa.worker.db.mark_file_error", new_callable=AsyncMock) as mock_error:
        outcome = await handle_stage_failure(db, _services(), job, PersistenceError("deadlock"))
    assert outcome == "retry"
    assert mock_inc.call_args[0][3] == "l2"
    assert mock_resched.call_args[0][2] == 4.0
    mock_error.assert_not_awaited()
    db.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_retries_exhausted_moves_file_to_error():
    db = _mock_db()
    batch_id = str(uuid4())
    job = _job(batch_id=batch_id)
    with patch("lqa.worker.db.increment_stage_retry", new_callable=AsyncMock, return_value=4), \
         patch("lqa.worker.db.reschedule_job", new_callable=AsyncMock) as mock_resched, \
         patch("lqa.worker.db.mark_file_error", new_callable=AsyncMock, return_value=True) as mock_error, \
         patch("lqa.worker.db.fail_job", new_callable=AsyncMock) as mock_fail, \
         patch("lqa.worker.orchestrator.check_batch_completion", new_callable=AsyncMock) as mock_check:
        outcome = await handle_stage_failure(db, _services(), job, PersistenceError("deadlock"))
    assert outcome == "error"
    mock_resched.assert_not_awaited()
    assert "after 3 retries" in mock_error.call_args[0][3]
    mock_fail.assert_awaited_once()
    mock_check.assert_awaited_once_with(db, TENANT, batch_id)


@pytest.mark.asyncio
async def test_validation_failure_is_not_retried():
    job = _job()
    with patch("lqa.worker.db.increment_stage_retry", new_callable=AsyncMock) as mock_inc, \
         patch("lqa.worker.db.mark_file_error", new_callable=AsyncMock, return_value=True), \
         patch("lqa.worker.db.fail_job", new_callable=AsyncMock):
        outcome = await handle_stage_failure(_mock_db(), _services(), job, ValidationError("no segments"))
    assert outcome == "error"
    mock_inc.assert_not_awaited()


@pytest.mark.asyncio
async def test_audit_failure_marks_error_then_propagates():
    job = _job(stage="scored")
    with patch("lqa.worker.db.mark_file_error", new_callable=AsyncMock, return_value=True) as mock_error, \
         patch("lqa.worker.db.fail_job", new_callable=AsyncMock):
        with pytest.raises(AuditWriteError):
            await handle_stage_failure(_mock_db(), _services(), job, AuditWriteError("audit down"))
    mock_error.assert_awaited_once()
