"""
Pipeline worker entry-point.

Thin shell: main() -> worker_loop() -> N job runners + one maintenance task.
Runners claim jobs from ``pipeline_jobs`` (SKIP LOCKED) and dispatch them via
process_job(); the maintenance task fires due score recomputes and runs the
periodic sweeps (stale scores, open batches, stuck jobs).
All business logic lives in ``lqa.worker.{orchestrator, batch}``.
DB access is via ``lqa.worker.db``.  Configuration via ``lqa.worker.config``.
"""
import asyncio
import logging
import os
import sys
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from lqa import config as app_config
from lqa.database import build_engine, build_session_factory
from lqa.models import PipelineJob
from lqa.worker import db as pipeline_db
from lqa.worker.batch import check_batch_completion, run_cross_file_analysis, start_batch
from lqa.worker.config import WorkerConfig, load_worker_config
from lqa.worker.context import PipelineServices, build_pipeline_services
from lqa.worker.errors import AuditWriteError, backoff_seconds, classify_stage_error
from lqa.worker.jobs import JOB_BATCH_COMPLETED, JOB_BATCH_STARTED, JOB_PROCESS_FILE
from lqa.worker.orchestrator import handle_stage_failure, process_file_event

logger = logging.getLogger(__name__)


def _utc_now_naive() -> datetime:
    """Naive UTC datetime for DB (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


WORKER_ID = f"worker-{os.getpid()}-{_utc_now_naive().isoformat()}"


def configure_logging(cfg: WorkerConfig) -> None:
    logging.basicConfig(
        level=getattr(logging, cfg.log_level, logging.INFO),
        format=cfg.log_format,
    )


# ---------------------------------------------------------------------------
# process_job
# ---------------------------------------------------------------------------

async def _dispatch(job: PipelineJob, db: AsyncSession, services: PipelineServices) -> None:
    payload = job.payload or {}
    if job.kind == JOB_PROCESS_FILE:
        await process_file_event(db, services, payload)
    elif job.kind == JOB_BATCH_STARTED:
        await start_batch(db, services, payload)
    elif job.kind == JOB_BATCH_COMPLETED:
        await run_cross_file_analysis(db, services, payload)
    else:
        raise ValueError(f"Unknown job kind {job.kind!r}")


async def _handle_batch_job_failure(job: PipelineJob, db: AsyncSession, services: PipelineServices, error: Exception) -> None:
    cfg = services.config
    error_type, retryable = classify_stage_error(error)
    attempts = job.attempts or 1
    if retryable and attempts <= cfg.max_stage_retries:
        delay = backoff_seconds(attempts, cfg.retry_backoff_base_seconds, cfg.retry_backoff_max_seconds)
        await pipeline_db.reschedule_job(db, job, delay, f"{error_type}: {error}")
        logger.warning("[JOB %s] %s failed (%s), retry in %.1fs", job.id, job.kind, error_type, delay)
    else:
        await pipeline_db.fail_job(db, job, f"{error_type}: {error}")
        logger.error("[JOB %s] %s failed permanently (%s)", job.id, job.kind, error_type)
    await db.commit()


async def process_job(job: PipelineJob, db: AsyncSession, services: PipelineServices) -> None:
    """Process a single claimed job; failures go through the retry policy."""
    job_start_time = _utc_now_naive()
    job_id = job.id
    try:
        logger.info("[JOB %s] Starting %s (%s, attempt %s)", job_id, job.kind, job.idempotency_key, job.attempts)
        await _dispatch(job, db, services)
        await pipeline_db.complete_job(db, job)
        await db.commit()
        job_duration = (_utc_now_naive() - job_start_time).total_seconds()
        logger.info("[JOB %s] Completed in %.2fs", job_id, job_duration)
    except Exception as e:
        job_duration = (_utc_now_naive() - job_start_time).total_seconds()
        logger.error("[JOB %s] Error after %.2fs: %s", job_id, job_duration, e, exc_info=True)
        await pipeline_db.safe_rollback(db)
        await db.refresh(job)
        if job.kind == JOB_PROCESS_FILE:
            await handle_stage_failure(db, services, job, e)
        else:
            await _handle_batch_job_failure(job, db, services, e)
            if isinstance(e, AuditWriteError):
                raise


# ---------------------------------------------------------------------------
# worker_loop
# ---------------------------------------------------------------------------

async def _job_runner(runner_id: int, services: PipelineServices) -> None:
    cfg = services.config
    poll_count = 0
    while True:
        try:
            async with services.session_factory() as db:
                job = await pipeline_db.claim_next_job(db, f"{WORKER_ID}-{runner_id}")
                if job:
                    await process_job(job, db, services)
                    poll_count = 0
                    continue
            poll_count += 1
            if poll_count % 10 == 0:
                logger.debug("[runner %s] No pending jobs (poll #%s)", runner_id, poll_count)
            await asyncio.sleep(cfg.poll_interval_seconds)
        except Exception as e:
            logger.error("[runner %s] Error in worker loop: %s", runner_id, e, exc_info=True)
            await asyncio.sleep(cfg.error_sleep_seconds)


async def run_sweeps(services: PipelineServices) -> None:
    """Stuck jobs, stale scores, and batches whose completion signal may have been lost."""
    cfg = services.config
    async with services.session_factory() as db:
        await pipeline_db.recover_stale_jobs(db, cfg.stale_job_timeout_minutes, WORKER_ID)
    await services.scheduler.reconcile()
    async with services.session_factory() as db:
        open_batches = await pipeline_db.list_open_batches(db)
    for tenant_id, batch_id in open_batches:
        async with services.session_factory() as db:
            try:
                await check_batch_completion(db, tenant_id, batch_id)
            except Exception as e:
                logger.error("[batch %s] completion sweep failed: %s", batch_id, e, exc_info=True)
                await pipeline_db.safe_rollback(db)


async def _maintenance(services: PipelineServices) -> None:
    cfg = services.config
    last_sweep = 0.0
    loop = asyncio.get_running_loop()
    while True:
        try:
            await services.scheduler.fire_due()
            if loop.time() - last_sweep >= cfg.reconcile_interval_seconds:
                await run_sweeps(services)
                last_sweep = loop.time()
            await asyncio.sleep(min(cfg.poll_interval_seconds, cfg.score_debounce_ms / 1000.0))
        except Exception as e:
            logger.error("Error in maintenance loop: %s", e, exc_info=True)
            await asyncio.sleep(cfg.error_sleep_seconds)


async def worker_loop(cfg: WorkerConfig | None = None) -> None:
    """Main worker loop: build services once, then run the job runners and maintenance."""
    cfg = cfg or load_worker_config()
    engine = build_engine(app_config.DATABASE_URL, pool_size=cfg.concurrency + 2)
    session_factory = build_session_factory(engine)
    services = build_pipeline_services(session_factory, cfg)
    logger.info("Worker %s starting (%s runners)...", WORKER_ID, cfg.concurrency)

    tasks = [asyncio.create_task(_job_runner(i, services)) for i in range(cfg.concurrency)]
    tasks.append(asyncio.create_task(_maintenance(services)))
    try:
        await asyncio.gather(*tasks)
    finally:
        for task in tasks:
            task.cancel()
        await engine.dispose()


# ---------------------------------------------------------------------------
# main
# ---------------------------------------------------------------------------

def main():
    """Entry point for worker process."""
    cfg = load_worker_config()
    configure_logging(cfg)
    try:
        asyncio.run(worker_loop(cfg))
    except KeyboardInterrupt:
        logger.info("Worker shutting down...")
    except Exception as e:
        logger.error("Fatal error in worker: %s", e, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
