"""Batch summary: which files can be passed and which need a reviewer."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from lqa.worker import db as pipeline_db
from lqa.worker.errors import ValidationError

TERMINAL_STATUSES = ("scored", "error")


@dataclass
class FileSummary:
    file_id: str
    file_name: str
    status: str
    mqm_score: float | None
    score_status: str | None
    critical_count: int
    major_count: int
    minor_count: int
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class BatchSummary:
    batch_id: str
    project_id: str
    total_files: int
    completed: bool
    processing_time_ms: int | None
    recommended_pass: list[FileSummary] = field(default_factory=list)
    need_review: list[FileSummary] = field(default_factory=list)

    @property
    def passed_count(self) -> int:
        return len(self.recommended_pass)

    @property
    def needs_review_count(self) -> int:
        return len(self.need_review)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["passed_count"] = self.passed_count
        data["needs_review_count"] = self.needs_review_count
        return data


def summarize_files(files: list[FileSummary], threshold: float) -> tuple[list[FileSummary], list[FileSummary]]:
    """Split into (recommended_pass, need_review).

    Pass: score at or above threshold and no criticals. Pass is ordered by score
    descending, review by score ascending, ties by file id.
    """
    recommended, review = [], []
    for f in files:
        if f.mqm_score is not None and f.mqm_score >= threshold and f.critical_count == 0:
            recommended.append(f)
        else:
            review.append(f)
    recommended.sort(key=lambda f: (-(f.mqm_score or 0.0), f.file_id))
    review.sort(key=lambda f: (f.mqm_score if f.mqm_score is not None else 100.0, f.file_id))
    return recommended, review


def processing_time_ms(files: list[FileSummary]) -> int | None:
    """Latest update minus earliest creation, once every file is terminal."""
    if not files or any(f.status not in TERMINAL_STATUSES for f in files):
        return None
    created = [f.created_at for f in files if f.created_at]
    updated = [f.updated_at for f in files if f.updated_at]
    if not created or not updated:
        return None
    return int((max(updated) - min(created)).total_seconds() * 1000)


async def get_batch_summary(db: AsyncSession, tenant_id, batch_id, *, default_threshold: float = 95.0) -> BatchSummary:
    batch = await pipeline_db.get_batch(db, tenant_id, batch_id)
    if batch is None:
        raise ValidationError(f"Batch {batch_id} not found")
    project = await pipeline_db.get_project(db, tenant_id, batch.project_id)
    threshold = default_threshold
    if project is not None and project.auto_pass_threshold is not None:
        threshold = float(project.auto_pass_threshold)

    rows = await pipeline_db.load_batch_files_with_scores(db, tenant_id, batch_id)
    files = [
        FileSummary(
            file_id=str(f.id),
            file_name=f.file_name,
            status=f.status,
            mqm_score=score.mqm_score if score is not None else None,
            score_status=score.status if score is not None else None,
            critical_count=(score.critical_count or 0) if score is not None else 0,
            major_count=(score.major_count or 0) if score is not None else 0,
            minor_count=(score.minor_count or 0) if score is not None else 0,
            created_at=f.created_at,
            updated_at=f.updated_at,
        )
        for f, score in rows
    ]
    recommended, review = summarize_files(files, threshold)
    return BatchSummary(
        batch_id=str(batch.id),
        project_id=str(batch.project_id),
        total_files=len(files),
        completed=bool(batch.completed),
        processing_time_ms=processing_time_ms(files),
        recommended_pass=recommended,
        need_review=review,
    )
