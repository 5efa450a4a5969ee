"""
Thin HTTP surface over the pipeline.

Routes only validate input, resolve the tenant from ``X-Tenant-Id`` and hand
off to services or the job queue; all stage work happens in the worker.
"""
import logging
from contextlib import asynccontextmanager
from typing import List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from lqa.config import DATABASE_URL, ENV
from lqa.database import build_engine, build_session_factory, get_db
from lqa.models import Batch
from lqa.services.audit import AuditEntry, AuditWriter
from lqa.services.batch_summary import get_batch_summary
from lqa.services.parity_report import generate_parity_report, report_missing_check
from lqa.services.review import REVIEW_STATUSES, bulk_update_finding_status, update_finding_status
from lqa.services.score_scheduler import RecomputeScheduler
from lqa.worker import db as pipeline_db
from lqa.worker.config import load_worker_config
from lqa.worker.errors import AuditWriteError, ValidationError
from lqa.worker.jobs import enqueue_batch_started, enqueue_process_file
from lqa.worker.orchestrator import PROCESSING_MODES, next_stage

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the engine, session factory, audit writer and scheduler once per process."""
    cfg = load_worker_config()
    engine = build_engine(DATABASE_URL)
    session_factory = build_session_factory(engine)
    audit = AuditWriter()
    app.state.worker_config = cfg
    app.state.session_factory = session_factory
    app.state.audit = audit
    app.state.scheduler = RecomputeScheduler(
        session_factory,
        audit,
        debounce_ms=cfg.score_debounce_ms,
        default_threshold=cfg.default_auto_pass_threshold,
        new_pair_review_count=cfg.new_pair_review_file_count,
    )
    logger.info("API started (env=%s)", ENV)
    try:
        yield
    finally:
        await engine.dispose()


app = FastAPI(title="LQA Pipeline", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ValidationError)
async def _validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(AuditWriteError)
async def _audit_error_handler(request: Request, exc: AuditWriteError):
    logger.error("Audit write failed on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Audit write failed; change was not saved"})


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def _parse_uuid(value: str, name: str) -> UUID:
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail=f"Invalid {name}")


def get_tenant_id(x_tenant_id: Optional[str] = Header(None)) -> str:
    if not x_tenant_id or not x_tenant_id.strip():
        raise HTTPException(status_code=400, detail="X-Tenant-Id header is required")
    return str(_parse_uuid(x_tenant_id.strip(), "X-Tenant-Id"))


def get_user_id(x_user_id: Optional[str] = Header(None)) -> Optional[str]:
    return x_user_id.strip() if x_user_id and x_user_id.strip() else None


def get_audit(request: Request) -> AuditWriter:
    return request.app.state.audit


def get_scheduler(request: Request) -> RecomputeScheduler:
    return request.app.state.scheduler


def get_similarity_threshold(request: Request) -> float:
    cfg = getattr(request.app.state, "worker_config", None)
    return cfg.parity_similarity_threshold if cfg is not None else 0.8


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class BatchCreateRequest(BaseModel):
    project_id: str
    file_ids: List[str] = Field(default_factory=list)
    mode: Optional[str] = None


class ProcessFileRequest(BaseModel):
    mode: Optional[str] = None


class FindingStatusRequest(BaseModel):
    review_status: str


class BulkFindingStatusRequest(BaseModel):
    finding_ids: List[str]
    review_status: str


class MissingCheckRequest(BaseModel):
    file_reference: str
    segment_number: int
    expected_description: str
    expected_category: str


def _check_mode(mode: Optional[str]) -> None:
    if mode is not None and mode not in PROCESSING_MODES:
        raise HTTPException(status_code=400, detail=f"mode must be one of {list(PROCESSING_MODES)}")


def _check_review_status(status: str) -> None:
    if status not in REVIEW_STATUSES:
        raise HTTPException(status_code=400, detail=f"review_status must be one of {list(REVIEW_STATUSES)}")


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.post("/batches")
async def create_batch(
    body: BatchCreateRequest,
    tenant_id: str = Depends(get_tenant_id),
    user_id: Optional[str] = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
    audit: AuditWriter = Depends(get_audit),
):
    """Create a batch from uploaded files and enqueue ``batch-started``."""
    _check_mode(body.mode)
    project_uuid = _parse_uuid(body.project_id, "project_id")
    project = await pipeline_db.get_project(db, tenant_id, project_uuid)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")

    file_uuids = list(dict.fromkeys(_parse_uuid(f, "file_id") for f in body.file_ids))
    files = []
    for file_uuid in file_uuids:
        qa_file = await pipeline_db.get_file(db, tenant_id, file_uuid)
        if not qa_file or qa_file.project_id != project.id:
            raise HTTPException(status_code=404, detail=f"File {file_uuid} not found in project")
        if qa_file.batch_id is not None:
            raise HTTPException(status_code=409, detail=f"File {file_uuid} already belongs to a batch")
        files.append(qa_file)

    mode = body.mode or project.processing_mode or "economy"
    batch = Batch(
        tenant_id=UUID(tenant_id),
        project_id=project.id,
        file_ids=[str(f) for f in file_uuids],
        mode=mode,
    )
    db.add(batch)
    await db.flush()
    for qa_file in files:
        qa_file.batch_id = batch.id

    await enqueue_batch_started(db, tenant_id, batch.id, project.id, file_uuids, mode)
    await audit.write(db, AuditEntry(
        tenant_id=tenant_id,
        entity_type="batch",
        entity_id=str(batch.id),
        action="batch.created",
        user_id=user_id,
        new_value={"file_count": len(file_uuids), "mode": mode},
    ))
    await db.commit()
    logger.info("[batch %s] created with %s files (%s)", batch.id, len(file_uuids), mode)
    return {"batch_id": str(batch.id), "file_count": len(file_uuids), "mode": mode}


@app.post("/files/{file_id}/process")
async def process_file(
    file_id: str,
    body: Optional[ProcessFileRequest] = None,
    tenant_id: str = Depends(get_tenant_id),
    user_id: Optional[str] = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Enqueue the next stage for a single file (``process-file``)."""
    mode = body.mode if body else None
    _check_mode(mode)
    file_uuid = _parse_uuid(file_id, "file_id")
    qa_file = await pipeline_db.get_file(db, tenant_id, file_uuid)
    if not qa_file:
        raise HTTPException(status_code=404, detail="File not found")
    project = await pipeline_db.get_project(db, tenant_id, qa_file.project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")

    mode = mode or project.processing_mode or "economy"
    stage = next_stage(qa_file.status, mode)
    if stage is None:
        raise HTTPException(status_code=409, detail=f"File is already {qa_file.status}")
    enqueued = await enqueue_process_file(
        db, tenant_id, file_uuid, project.id, stage, mode=mode, batch_id=qa_file.batch_id, user_id=user_id,
    )
    await db.commit()
    return {"file_id": str(file_uuid), "stage": stage, "enqueued": enqueued}


@app.patch("/findings/{finding_id}")
async def patch_finding(
    finding_id: str,
    body: FindingStatusRequest,
    tenant_id: str = Depends(get_tenant_id),
    user_id: Optional[str] = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
    audit: AuditWriter = Depends(get_audit),
    scheduler: RecomputeScheduler = Depends(get_scheduler),
):
    _check_review_status(body.review_status)
    finding_uuid = _parse_uuid(finding_id, "finding_id")
    finding = await update_finding_status(
        db, tenant_id, finding_uuid, body.review_status, audit=audit, scheduler=scheduler, user_id=user_id,
    )
    await db.commit()
    return {"id": str(finding.id), "review_status": finding.review_status}


@app.post("/findings/bulk-status")
async def bulk_finding_status(
    body: BulkFindingStatusRequest,
    tenant_id: str = Depends(get_tenant_id),
    user_id: Optional[str] = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
    audit: AuditWriter = Depends(get_audit),
    scheduler: RecomputeScheduler = Depends(get_scheduler),
):
    _check_review_status(body.review_status)
    finding_uuids = [_parse_uuid(f, "finding_id") for f in body.finding_ids]
    updated = await bulk_update_finding_status(
        db, tenant_id, finding_uuids, body.review_status, audit=audit, scheduler=scheduler, user_id=user_id,
    )
    await db.commit()
    return {"updated": len(updated), "review_status": body.review_status}


@app.get("/batches/{batch_id}/summary")
async def batch_summary(
    batch_id: str,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    batch_uuid = _parse_uuid(batch_id, "batch_id")
    cfg = getattr(request.app.state, "worker_config", None)
    default_threshold = cfg.default_auto_pass_threshold if cfg is not None else 95.0
    try:
        summary = await get_batch_summary(db, tenant_id, batch_uuid, default_threshold=default_threshold)
    except ValidationError:
        raise HTTPException(status_code=404, detail="Batch not found")
    return summary.to_dict()


@app.post("/projects/{project_id}/parity")
async def create_parity_report(
    project_id: str,
    file: UploadFile,
    batch_id: Optional[str] = None,
    tenant_id: str = Depends(get_tenant_id),
    user_id: Optional[str] = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
    audit: AuditWriter = Depends(get_audit),
    similarity_threshold: float = Depends(get_similarity_threshold),
):
    """Compare the project's (or one batch's) findings with an uploaded xlsx report."""
    if not file.filename or not file.filename.lower().endswith(".xlsx"):
        raise HTTPException(status_code=400, detail="An .xlsx report is required")
    project_uuid = _parse_uuid(project_id, "project_id")
    batch_uuid = _parse_uuid(batch_id, "batch_id") if batch_id else None
    contents = await file.read()
    report, result = await generate_parity_report(
        db,
        tenant_id,
        project_uuid,
        contents,
        audit=audit,
        batch_id=batch_uuid,
        user_id=user_id,
        similarity_threshold=similarity_threshold,
    )
    await db.commit()
    return {"report_id": str(report.id), **result.to_dict()}


@app.post("/projects/{project_id}/missing-checks")
async def create_missing_check(
    project_id: str,
    body: MissingCheckRequest,
    tenant_id: str = Depends(get_tenant_id),
    user_id: Optional[str] = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
    audit: AuditWriter = Depends(get_audit),
):
    project_uuid = _parse_uuid(project_id, "project_id")
    report = await report_missing_check(
        db,
        tenant_id,
        project_uuid,
        file_reference=body.file_reference,
        segment_number=body.segment_number,
        expected_description=body.expected_description,
        expected_category=body.expected_category,
        audit=audit,
        user_id=user_id,
    )
    await db.commit()
    return {"id": str(report.id), "tracking_reference": report.tracking_reference}
