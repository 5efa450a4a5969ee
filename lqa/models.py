from sqlalchemy import Boolean, Column, String, DateTime, Integer, Text, ForeignKey, Float, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from datetime import datetime
import uuid
from lqa.database import Base

# Every table carries tenant_id; all reads and writes in lqa.worker.db filter on it.


class Project(Base):
    __tablename__ = "projects"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    source_lang = Column(String(35), nullable=False)  # BCP-47, e.g. en-US
    target_langs = Column(JSONB, nullable=False, default=list)
    processing_mode = Column(String(20), default="economy", nullable=False)  # economy, thorough
    auto_pass_threshold = Column(Float, default=95.0, nullable=False)
    glossary_id = Column(UUID(as_uuid=True), nullable=True)
    suppressed_categories = Column(JSONB, nullable=False, default=list)
    pinned_l2_model = Column(String(100), nullable=True)
    pinned_l3_model = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Batch(Base):
    """Files submitted together; completes once, then gets exactly one cross-file pass."""
    __tablename__ = "batches"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id"), nullable=False)
    file_ids = Column(JSONB, nullable=False, default=list)
    mode = Column(String(20), default="economy", nullable=False)  # economy, thorough
    completed = Column(Boolean, default=False, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    cross_file_analyzed = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class QaFile(Base):
    __tablename__ = "qa_files"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id"), nullable=False)
    batch_id = Column(UUID(as_uuid=True), ForeignKey("batches.id"), nullable=True, index=True)
    file_name = Column(String(500), nullable=False)
    status = Column(String(20), default="uploaded", nullable=False)  # uploaded, parsing, parsed, l1, l2, l3, scored, error
    retry_counts = Column(JSONB, nullable=False, default=dict)  # {"l2": 1, ...}
    escalated_segment_ids = Column(JSONB, nullable=False, default=list)  # L2 -> L3 hand-off
    escalation_hints = Column(JSONB, nullable=False, default=dict)  # segment id -> L2 "category: description"
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class Segment(Base):
    """One aligned source/target pair. Written by the upstream parser; read-only here."""
    __tablename__ = "segments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    file_id = Column(UUID(as_uuid=True), ForeignKey("qa_files.id", ondelete="CASCADE"), nullable=False, index=True)
    segment_number = Column(Integer, nullable=False)
    source_text = Column(Text, nullable=False)
    target_text = Column(Text, nullable=False, default="")
    source_lang = Column(String(35), nullable=False)
    target_lang = Column(String(35), nullable=False)
    confirmation_state = Column(String(40), nullable=True)  # e.g. Translated, ApprovedSignOff
    word_count = Column(Integer, default=0, nullable=False)

    __table_args__ = (UniqueConstraint("file_id", "segment_number", name="uq_segments_file_number"),)


class Finding(Base):
    """A detected issue. Append-only except review_status; (file_id, dedup_key) is unique."""
    __tablename__ = "findings"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id"), nullable=False)
    file_id = Column(UUID(as_uuid=True), ForeignKey("qa_files.id", ondelete="CASCADE"), nullable=False, index=True)
    segment_id = Column(UUID(as_uuid=True), ForeignKey("segments.id", ondelete="CASCADE"), nullable=True)
    layer = Column(String(20), nullable=False)  # L1, L2, L3, cross_file
    stage = Column(String(20), nullable=False)  # l1, l2, l3, cross_file
    rule_id = Column(String(200), nullable=False)
    category = Column(String(100), nullable=False)
    severity = Column(String(20), nullable=False)  # critical, major, minor
    description = Column(Text, nullable=False)
    suggested_fix = Column(Text, nullable=True)
    source_excerpt = Column(Text, nullable=True)
    target_excerpt = Column(Text, nullable=True)
    confidence = Column(Float, nullable=True)  # 0-100, AI layers only
    ai_model = Column(String(100), nullable=True)
    review_status = Column(String(20), default="open", nullable=False)  # open, accepted, rejected
    dedup_key = Column(String(512), nullable=False)
    related_file_ids = Column(JSONB, nullable=True)  # cross_file findings only
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("file_id", "dedup_key", name="uq_findings_file_dedup"),)


class Score(Base):
    """Derived projection of a file's findings. Never authoritative for review decisions."""
    __tablename__ = "scores"

    file_id = Column(UUID(as_uuid=True), ForeignKey("qa_files.id", ondelete="CASCADE"), primary_key=True)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id"), nullable=False)
    mqm_score = Column(Float, nullable=True)
    npt = Column(Float, nullable=True)
    segment_count = Column(Integer, default=0, nullable=False)
    critical_count = Column(Integer, default=0, nullable=False)
    major_count = Column(Integer, default=0, nullable=False)
    minor_count = Column(Integer, default=0, nullable=False)
    status = Column(String(20), default="pending", nullable=False)  # pending, computed, stale, na
    auto_pass_eligible = Column(Boolean, default=False, nullable=False)
    auto_pass_rationale = Column(Text, nullable=True)
    computed_at = Column(DateTime, nullable=True)


class ScoreRecomputeTask(Base):
    """Durable debounce timer: at most one pending recompute per file."""
    __tablename__ = "score_recompute_tasks"

    file_id = Column(UUID(as_uuid=True), primary_key=True)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    fire_at = Column(DateTime, nullable=False, index=True)
    generation = Column(Integer, default=1, nullable=False)  # bumped on every replace
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class PipelineJob(Base):
    """Durable work queue: process_file, batch_started, batch_completed."""
    __tablename__ = "pipeline_jobs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    kind = Column(String(40), nullable=False)  # process_file, batch_started, batch_completed
    idempotency_key = Column(String(300), nullable=False, unique=True)
    payload = Column(JSONB, nullable=False, default=dict)
    status = Column(String(20), default="pending", nullable=False)  # pending, processing, completed, failed
    attempts = Column(Integer, default=0, nullable=False)
    run_after = Column(DateTime, default=datetime.utcnow, nullable=False)
    worker_id = Column(String(100), nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    user_id = Column(String(100), nullable=True)  # None for system actions
    entity_type = Column(String(50), nullable=False)  # file, finding, score, batch, parity_report
    entity_id = Column(String(100), nullable=False)
    action = Column(String(100), nullable=False)  # e.g. finding.status_changed
    old_value = Column(JSONB, nullable=True)
    new_value = Column(JSONB, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class GlossaryTerm(Base):
    __tablename__ = "glossary_terms"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    glossary_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    source_term = Column(String(500), nullable=False)  # NFKC-normalized at import
    target_term = Column(String(500), nullable=False)
    case_sensitive = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class TaxonomyCategory(Base):
    __tablename__ = "taxonomy_categories"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    category = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    severity = Column(String(20), nullable=True)  # default severity hint for AI prompts
    display_order = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)


class CustomRule(Base):
    """Project-level regex rule applied to target text by L1."""
    __tablename__ = "custom_rules"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id"), nullable=False)
    name = Column(String(200), nullable=False)
    pattern = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)


class PenaltyWeight(Base):
    """MQM penalty per severity. tenant_id NULL = system default row."""
    __tablename__ = "penalty_weights"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    severity = Column(String(20), nullable=False)  # critical, major, minor
    weight = Column(Float, nullable=False)


class ParityReport(Base):
    __tablename__ = "parity_reports"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id"), nullable=False)
    batch_id = Column(UUID(as_uuid=True), ForeignKey("batches.id"), nullable=True)
    tool_finding_count = Column(Integer, default=0, nullable=False)
    external_finding_count = Column(Integer, default=0, nullable=False)
    both_found_count = Column(Integer, default=0, nullable=False)
    tool_only_count = Column(Integer, default=0, nullable=False)
    external_only_count = Column(Integer, default=0, nullable=False)
    similarity_threshold = Column(Float, nullable=False)
    comparison_data = Column(JSONB, nullable=False, default=dict)
    generated_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class MissingCheckReport(Base):
    """Reviewer report of an issue the external tool found but the pipeline missed."""
    __tablename__ = "missing_check_reports"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id"), nullable=False)
    file_reference = Column(String(500), nullable=False)
    segment_number = Column(Integer, nullable=False)
    expected_description = Column(Text, nullable=False)
    expected_category = Column(String(100), nullable=False)
    tracking_reference = Column(String(30), nullable=False, unique=True)  # MCR-YYYYMMDD-XXXXXX
    status = Column(String(20), default="pending", nullable=False)  # pending, investigating, resolved
    reported_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
