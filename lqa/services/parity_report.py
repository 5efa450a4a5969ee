"""External QA report parsing (xlsx) and persisted parity reports."""
from __future__ import annotations

import io
import logging
import secrets
import string
import zipfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import UUID

import openpyxl
from sqlalchemy.ext.asyncio import AsyncSession

from lqa.models import MissingCheckReport, ParityReport
from lqa.services.audit import AuditEntry, AuditWriter
from lqa.services.parity import (
    DEFAULT_SIMILARITY_THRESHOLD,
    ExternalFinding,
    InternalFinding,
    ParityResult,
    compare_findings,
)
from lqa.worker import db as pipeline_db
from lqa.worker.errors import ValidationError, require_tenant

logger = logging.getLogger(__name__)

# Findings raised by the Language Inspector are reviewer notes, not tool checks.
SKIPPED_AUTHORITIES = frozenset({"LI"})

_TRACKING_ALPHABET = string.ascii_uppercase + string.digits


@dataclass
class ExternalReport:
    findings: list[ExternalFinding] = field(default_factory=list)
    file_groups: dict[str, list[ExternalFinding]] = field(default_factory=dict)


def _cell_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _cell_int(value) -> int:
    if isinstance(value, (int, float)):
        return int(value)
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return 0


def parse_external_report(data: bytes) -> ExternalReport:
    """Parse a tabular report: header in row 1, columns located by name.

    Recognized columns: file, segment, source, target, category, severity, authority.
    Raises ValidationError when the bytes are not a readable workbook.
    """
    try:
        workbook = openpyxl.load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except (zipfile.BadZipFile, KeyError, ValueError, OSError) as e:
        raise ValidationError(f"Could not read xlsx report: {e}") from e

    try:
        sheet = workbook.worksheets[0] if workbook.worksheets else None
        if sheet is None:
            raise ValidationError("No worksheet found in xlsx report")

        rows = sheet.iter_rows(values_only=True)
        header = next(rows, None)
        if header is None:
            return ExternalReport()
        columns = {
            str(value).lower().strip(): idx
            for idx, value in enumerate(header)
            if value is not None and str(value).strip()
        }

        report = ExternalReport()
        for row in rows:
            if row is None or all(v is None for v in row):
                continue

            def get(name: str):
                idx = columns.get(name)
                if idx is None or idx >= len(row):
                    return None
                return row[idx]

            authority = _cell_text(get("authority")).strip()
            if authority in SKIPPED_AUTHORITIES:
                logger.debug("[parity] skipping %s row", authority)
                continue

            finding = ExternalFinding(
                file_name=_cell_text(get("file")),
                segment_number=_cell_int(get("segment")),
                source_text=_cell_text(get("source")),
                target_text=_cell_text(get("target")),
                category=_cell_text(get("category")),
                severity=_cell_text(get("severity")),
                authority=authority or None,
            )
            report.findings.append(finding)
            report.file_groups.setdefault(finding.file_name, []).append(finding)
    finally:
        workbook.close()

    logger.info(
        "[parity] parsed external report: %s findings across %s files",
        len(report.findings), len(report.file_groups),
    )
    return report


async def load_internal_findings(db: AsyncSession, tenant_id, project_id, *, batch_id=None) -> list[InternalFinding]:
    """Non-rejected findings of a project (or one batch) with their file name and segment number."""
    rows = await pipeline_db.load_findings_with_location(db, tenant_id, project_id, batch_id=batch_id)
    return [
        InternalFinding(
            id=str(f.id),
            file_name=file_name,
            segment_number=segment_number,
            category=f.category,
            severity=f.severity,
            source_text=f.source_excerpt or "",
            target_text=f.target_excerpt or "",
            description=f.description or "",
        )
        for f, file_name, segment_number in rows
        if f.review_status != "rejected"
    ]


async def generate_parity_report(
    db: AsyncSession,
    tenant_id,
    project_id,
    report_bytes: bytes,
    *,
    audit: AuditWriter,
    batch_id=None,
    user_id: str | None = None,
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> tuple[ParityReport, ParityResult]:
    """Compare the scope's findings with an uploaded report and persist the result. Does not commit."""
    require_tenant(tenant_id)
    project = await pipeline_db.get_project(db, tenant_id, project_id)
    if project is None:
        raise ValidationError(f"Project {project_id} not found")

    external = parse_external_report(report_bytes)
    internal = await load_internal_findings(db, tenant_id, project_id, batch_id=batch_id)
    result = compare_findings(internal, external.findings, similarity_threshold=similarity_threshold)

    report = ParityReport(
        tenant_id=UUID(str(tenant_id)),
        project_id=UUID(str(project_id)),
        batch_id=UUID(str(batch_id)) if batch_id else None,
        tool_finding_count=result.tool_finding_count,
        external_finding_count=result.external_finding_count,
        both_found_count=len(result.both_found),
        tool_only_count=len(result.tool_only),
        external_only_count=len(result.external_only),
        similarity_threshold=similarity_threshold,
        comparison_data=result.to_dict(),
        generated_by=user_id,
    )
    db.add(report)
    await db.flush()

    await audit.write(db, AuditEntry(
        tenant_id=tenant_id,
        entity_type="parity_report",
        entity_id=str(report.id),
        action="parity_report.generated",
        user_id=user_id,
        new_value={
            "bothFoundCount": report.both_found_count,
            "toolOnlyCount": report.tool_only_count,
            "externalOnlyCount": report.external_only_count,
        },
    ))
    return report, result


def generate_tracking_reference(now: datetime | None = None) -> str:
    """``MCR-YYYYMMDD-XXXXXX`` with a random uppercase alphanumeric suffix."""
    now = now or datetime.now(timezone.utc)
    suffix = "".join(secrets.choice(_TRACKING_ALPHABET) for _ in range(6))
    return f"MCR-{now.strftime('%Y%m%d')}-{suffix}"


async def report_missing_check(
    db: AsyncSession,
    tenant_id,
    project_id,
    *,
    file_reference: str,
    segment_number: int,
    expected_description: str,
    expected_category: str,
    audit: AuditWriter,
    user_id: str | None = None,
) -> MissingCheckReport:
    """Record an issue the pipeline missed. Does not commit."""
    require_tenant(tenant_id)
    if not (file_reference or "").strip():
        raise ValidationError("file_reference is required")
    if segment_number is None or segment_number < 1:
        raise ValidationError("segment_number must be a positive integer")
    if not (expected_description or "").strip() or not (expected_category or "").strip():
        raise ValidationError("expected_description and expected_category are required")
    project = await pipeline_db.get_project(db, tenant_id, project_id)
    if project is None:
        raise ValidationError(f"Project {project_id} not found")

    report = MissingCheckReport(
        tenant_id=UUID(str(tenant_id)),
        project_id=UUID(str(project_id)),
        file_reference=file_reference.strip(),
        segment_number=segment_number,
        expected_description=expected_description.strip(),
        expected_category=expected_category.strip(),
        tracking_reference=generate_tracking_reference(),
        status="pending",
        reported_by=user_id,
    )
    db.add(report)
    await db.flush()
    await audit.write(db, AuditEntry(
        tenant_id=tenant_id,
        entity_type="missing_check_report",
        entity_id=str(report.id),
        action="missing_check.reported",
        user_id=user_id,
        new_value={"trackingReference": report.tracking_reference, "fileReference": report.file_reference},
    ))
    logger.info("[parity] missing check reported: %s", report.tracking_reference)
    return report
