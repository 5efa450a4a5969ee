"""
MQM-style scoring.

``compute_score`` is the pure formula; ``score_file`` loads the current
findings at call time, writes the Score row, evaluates auto-pass and audits
the result. Scores are a projection of findings and are never read back as a
review decision.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from lqa.domain import SEVERITIES
from lqa.services.audit import AuditEntry, AuditWriter
from lqa.worker import db as pipeline_db
from lqa.worker.errors import require_tenant

logger = logging.getLogger(__name__)

DEFAULT_PENALTY_WEIGHTS: dict[str, float] = {"critical": 25.0, "major": 5.0, "minor": 1.0}


@dataclass
class ScoreResult:
    mqm_score: float | None
    npt: float | None
    segment_count: int
    critical_count: int = 0
    major_count: int = 0
    minor_count: int = 0
    status: str = "computed"  # computed, na


@dataclass
class AutoPassDecision:
    eligible: bool
    rationale: str
    reasons: list[str] = field(default_factory=list)


def _severity_and_status(finding) -> tuple[str, str]:
    if isinstance(finding, dict):
        return finding.get("severity"), finding.get("review_status", "open")
    return getattr(finding, "severity", None), getattr(finding, "review_status", "open") or "open"


def compute_score(findings: Iterable, segment_count: int, weights: dict[str, float] | None = None) -> ScoreResult:
    """penalty = sum of severity weights over non-rejected findings; npt per 100 segments.

    Zero segments yields status ``na`` with no score.
    """
    weights = weights or DEFAULT_PENALTY_WEIGHTS
    counts = {s: 0 for s in SEVERITIES}
    penalty = 0.0
    for finding in findings:
        severity, review_status = _severity_and_status(finding)
        if review_status == "rejected" or severity not in counts:
            continue
        counts[severity] += 1
        penalty += float(weights.get(severity, DEFAULT_PENALTY_WEIGHTS[severity]))

    if segment_count <= 0:
        return ScoreResult(
            mqm_score=None,
            npt=None,
            segment_count=0,
            critical_count=counts["critical"],
            major_count=counts["major"],
            minor_count=counts["minor"],
            status="na",
        )

    npt = round(penalty / segment_count * 100, 2)
    return ScoreResult(
        mqm_score=round(max(0.0, 100.0 - npt), 2),
        npt=npt,
        segment_count=segment_count,
        critical_count=counts["critical"],
        major_count=counts["major"],
        minor_count=counts["minor"],
    )


async def load_penalty_weights(db: AsyncSession, tenant_id) -> dict[str, float]:
    """Per severity: tenant row, else system row (tenant_id NULL), else hardcoded default."""
    rows = await pipeline_db.load_penalty_weight_rows(db, tenant_id)
    tenant_str = str(tenant_id)
    tenant_rows: dict[str, float] = {}
    system_rows: dict[str, float] = {}
    for row in rows:
        if row.tenant_id is None:
            system_rows[row.severity] = float(row.weight)
        elif str(row.tenant_id) == tenant_str:
            tenant_rows[row.severity] = float(row.weight)

    weights = {}
    for severity, default in DEFAULT_PENALTY_WEIGHTS.items():
        if severity in tenant_rows:
            weights[severity] = tenant_rows[severity]
        elif severity in system_rows:
            weights[severity] = system_rows[severity]
        else:
            weights[severity] = default
    return weights


def check_auto_pass(
    result: ScoreResult,
    *,
    threshold: float,
    scored_files_for_pair: int,
    new_pair_review_count: int = 50,
) -> AutoPassDecision:
    reasons: list[str] = []
    if result.status != "computed" or result.mqm_score is None:
        reasons.append("no score (file has no segments)")
    else:
        if result.mqm_score < threshold:
            reasons.append(f"score {result.mqm_score} below threshold {threshold}")
        if result.critical_count > 0:
            reasons.append(f"{result.critical_count} critical finding(s)")
    if scored_files_for_pair < new_pair_review_count:
        reasons.append(
            f"new language pair: {scored_files_for_pair} of first {new_pair_review_count} files require review"
        )

    if reasons:
        return AutoPassDecision(eligible=False, rationale="Manual review required: " + "; ".join(reasons), reasons=reasons)
    return AutoPassDecision(
        eligible=True,
        rationale=f"Score {result.mqm_score} >= {threshold} with no critical findings",
    )


async def score_file(
    db: AsyncSession,
    tenant_id,
    file_id,
    *,
    audit: AuditWriter,
    default_threshold: float = 95.0,
    new_pair_review_count: int = 50,
    user_id: str | None = None,
) -> ScoreResult | None:
    """Recompute and persist one file's score from its findings as they are now.

    Does not commit. Returns None when the file does not exist for this tenant.
    Audit failure propagates as AuditWriteError.
    """
    require_tenant(tenant_id)
    qa_file = await pipeline_db.get_file(db, tenant_id, file_id)
    if qa_file is None:
        logger.warning("[FILE %s] score skipped: file not found for tenant %s", file_id, tenant_id)
        return None

    findings = await pipeline_db.load_findings_for_file(db, tenant_id, file_id)
    segments = await pipeline_db.load_segments(db, tenant_id, file_id)
    weights = await load_penalty_weights(db, tenant_id)
    result = compute_score(findings, len(segments), weights)

    project = await pipeline_db.get_project(db, tenant_id, qa_file.project_id)
    threshold = default_threshold
    if project is not None and project.auto_pass_threshold is not None:
        threshold = float(project.auto_pass_threshold)

    scored_for_pair = 0
    if segments:
        scored_for_pair = await pipeline_db.count_scored_files_for_pair(
            db, tenant_id, qa_file.project_id, segments[0].source_lang, segments[0].target_lang,
        )
    decision = check_auto_pass(
        result,
        threshold=threshold,
        scored_files_for_pair=scored_for_pair,
        new_pair_review_count=new_pair_review_count,
    )

    values = {
        "mqm_score": result.mqm_score,
        "npt": result.npt,
        "segment_count": result.segment_count,
        "critical_count": result.critical_count,
        "major_count": result.major_count,
        "minor_count": result.minor_count,
        "status": result.status,
        "auto_pass_eligible": decision.eligible,
        "auto_pass_rationale": decision.rationale,
        "computed_at": datetime.now(timezone.utc).replace(tzinfo=None),
    }
    await pipeline_db.upsert_score(db, tenant_id, file_id, qa_file.project_id, values)
    await audit.write(db, AuditEntry(
        tenant_id=tenant_id,
        entity_type="score",
        entity_id=str(file_id),
        action="score.computed",
        user_id=user_id,
        new_value={
            "mqm_score": result.mqm_score,
            "npt": result.npt,
            "status": result.status,
            "auto_pass_eligible": decision.eligible,
        },
    ))
    logger.info(
        "[FILE %s] scored: mqm=%s npt=%s (%s/%s/%s) auto_pass=%s",
        file_id, result.mqm_score, result.npt,
        result.critical_count, result.major_count, result.minor_count, decision.eligible,
    )
    return result
