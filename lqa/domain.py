"""Plain data carriers shared by the analysis services (no DB, no I/O)."""
from __future__ import annotations

import hashlib
from dataclasses import dataclass, field

SEVERITIES = ("critical", "major", "minor")
SEVERITY_RANK = {"critical": 3, "major": 2, "minor": 1}

# ApprovedSignOff segments were signed off upstream and are not re-checked.
SKIP_CONFIRMATION_STATES = frozenset({"ApprovedSignOff"})

EXCERPT_MAX_CHARS = 500


@dataclass(frozen=True)
class SegmentRecord:
    id: str
    segment_number: int
    source_text: str
    target_text: str
    source_lang: str = ""
    target_lang: str = ""
    confirmation_state: str | None = None
    word_count: int = 0


@dataclass(frozen=True)
class GlossaryEntry:
    source_term: str
    target_term: str
    case_sensitive: bool = False


@dataclass(frozen=True)
class CustomRuleDef:
    id: str
    name: str
    pattern: str
    description: str = ""


@dataclass(frozen=True)
class CategoryDef:
    category: str
    description: str = ""
    severity: str | None = None


def truncate_excerpt(text: str | None) -> str | None:
    if text is None:
        return None
    return text[:EXCERPT_MAX_CHARS]


def build_dedup_key(file_id: str, stage: str, rule_id: str, segment_id: str | None) -> str:
    """Deterministic key: file + stage + rule/category + segment.

    Long rule ids (glossary terms, custom patterns) are hashed so the key fits the column.
    """
    rule_part = rule_id
    if len(rule_part) > 200:
        rule_part = "h:" + hashlib.sha1(rule_part.encode("utf-8")).hexdigest()
    return f"{file_id}|{stage}|{rule_part}|{segment_id or '-'}"


@dataclass
class FindingDraft:
    """A finding before persistence; dedup_key makes re-insertion idempotent."""

    file_id: str
    stage: str  # l1, l2, l3, cross_file
    layer: str  # L1, L2, L3, cross_file
    rule_id: str
    category: str
    severity: str
    description: str
    segment_id: str | None = None
    source_excerpt: str | None = None
    target_excerpt: str | None = None
    suggested_fix: str | None = None
    confidence: float | None = None
    ai_model: str | None = None
    related_file_ids: list[str] | None = None

    @property
    def dedup_key(self) -> str:
        return build_dedup_key(self.file_id, self.stage, self.rule_id, self.segment_id)


@dataclass
class CrossFileFinding:
    """Batch-scoped inconsistency spanning several files."""

    category: str
    severity: str
    description: str
    rule_id: str
    file_ids: list[str] = field(default_factory=list)
    source_text: str = ""
    targets: list[str] = field(default_factory=list)

    def to_drafts(self) -> list[FindingDraft]:
        """One persisted row per involved file so each file's score sees it."""
        related = sorted(self.file_ids)
        return [
            FindingDraft(
                file_id=fid,
                stage="cross_file",
                layer="cross_file",
                rule_id=self.rule_id,
                category=self.category,
                severity=self.severity,
                description=self.description,
                segment_id=None,
                source_excerpt=truncate_excerpt(self.source_text),
                target_excerpt=truncate_excerpt(" | ".join(self.targets)) if self.targets else None,
                related_file_ids=related,
            )
            for fid in related
        ]
