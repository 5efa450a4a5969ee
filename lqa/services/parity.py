"""
Parity matching: reconcile pipeline findings against an external QA tool's report.

Two passes. The exact pass pairs findings at the same (file name, segment
number). The fuzzy pass pairs the leftovers within the same file by category,
severity tolerance and text similarity. Every finding lands in exactly one of
``both_found``, ``tool_only`` or ``external_only``.
"""
from __future__ import annotations

import logging
import unicodedata
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import Any

from lqa.domain import SEVERITY_RANK
from lqa.services.utils import normalize_for_match

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.8

# External check type -> MQM top-level category.
EXTERNAL_TO_MQM_CATEGORY: dict[str, str] = {
    "inconsistency in source": "consistency",
    "inconsistency in target": "consistency",
    "key term mismatch": "terminology",
    "untranslated": "completeness",
    "target same as source": "completeness",
    "tag mismatch": "fluency",
    "numeric mismatch": "accuracy",
    "number mismatch": "accuracy",
    "double space": "fluency",
    "double blank": "fluency",
    "repeated word": "fluency",
    "repeated words": "fluency",
    "spell check": "fluency",
}

# External check type -> rule engine category, so L1 findings can match on category.
EXTERNAL_TO_TOOL_CATEGORY: dict[str, str] = {
    "inconsistency in source": "consistency",
    "inconsistency in target": "consistency",
    "key term mismatch": "key_term",
    "untranslated": "completeness",
    "target same as source": "completeness",
    "tag mismatch": "tag_integrity",
    "numeric mismatch": "number_format",
    "number mismatch": "number_format",
    "double space": "spacing",
    "double blank": "spacing",
    "repeated word": "repeated_word",
    "repeated words": "repeated_word",
    "spell check": "fluency",
}

# External tools use their own severity words.
_EXTERNAL_SEVERITY_ALIASES = {
    "critical": "critical",
    "high": "critical",
    "major": "major",
    "error": "major",
    "medium": "major",
    "minor": "minor",
    "low": "minor",
    "warning": "minor",
    "info": "minor",
}


def map_external_category(category: str | None) -> str:
    """Total mapping: unknown or empty input maps to ``other``."""
    return EXTERNAL_TO_MQM_CATEGORY.get((category or "").lower().strip(), "other")


def map_external_to_tool_category(category: str | None) -> str:
    return EXTERNAL_TO_TOOL_CATEGORY.get((category or "").lower().strip(), "other")


def normalize_severity(severity: str | None) -> str:
    return _EXTERNAL_SEVERITY_ALIASES.get((severity or "").lower().strip(), "major")


@dataclass
class InternalFinding:
    id: str
    file_name: str
    segment_number: int | None
    category: str
    severity: str
    source_text: str = ""
    target_text: str = ""
    description: str = ""


@dataclass
class ExternalFinding:
    file_name: str
    segment_number: int
    source_text: str
    target_text: str
    category: str
    severity: str
    authority: str | None = None
    normalized_category: str = field(init=False)
    tool_category: str = field(init=False)

    def __post_init__(self):
        self.normalized_category = map_external_category(self.category)
        self.tool_category = map_external_to_tool_category(self.category)


@dataclass
class ParityMatch:
    status: str  # both_found, tool_only, external_only
    internal: InternalFinding | None = None
    external: ExternalFinding | None = None
    match_type: str | None = None  # exact, fuzzy
    similarity: float | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status, "matchType": self.match_type}
        if self.similarity is not None:
            data["similarity"] = round(self.similarity, 4)
        if self.internal is not None:
            data["tool"] = {
                "id": self.internal.id,
                "fileName": self.internal.file_name,
                "segmentNumber": self.internal.segment_number,
                "category": self.internal.category,
                "severity": self.internal.severity,
                "description": self.internal.description,
            }
        if self.external is not None:
            data["external"] = {
                "fileName": self.external.file_name,
                "segmentNumber": self.external.segment_number,
                "category": self.external.category,
                "normalizedCategory": self.external.normalized_category,
                "severity": self.external.severity,
                "sourceText": self.external.source_text,
                "targetText": self.external.target_text,
            }
        return data


@dataclass
class ParityResult:
    both_found: list[ParityMatch] = field(default_factory=list)
    tool_only: list[ParityMatch] = field(default_factory=list)
    external_only: list[ParityMatch] = field(default_factory=list)

    @property
    def tool_finding_count(self) -> int:
        return len(self.both_found) + len(self.tool_only)

    @property
    def external_finding_count(self) -> int:
        return len(self.both_found) + len(self.external_only)

    def to_dict(self) -> dict[str, Any]:
        return {
            "bothFound": [m.to_dict() for m in self.both_found],
            "toolOnly": [m.to_dict() for m in self.tool_only],
            "externalOnly": [m.to_dict() for m in self.external_only],
            "bothFoundCount": len(self.both_found),
            "toolOnlyCount": len(self.tool_only),
            "externalOnlyCount": len(self.external_only),
            "toolFindingCount": self.tool_finding_count,
            "externalFindingCount": self.external_finding_count,
        }


def _same_file(a: str, b: str) -> bool:
    return (a or "").strip().casefold() == (b or "").strip().casefold()


def _category_matches(internal: InternalFinding, external: ExternalFinding) -> bool:
    category = (internal.category or "").lower().strip()
    return category in (external.normalized_category, external.tool_category)


def _severity_distance(internal: InternalFinding, external: ExternalFinding) -> int:
    return abs(
        SEVERITY_RANK.get(internal.severity, 2) - SEVERITY_RANK[normalize_severity(external.severity)]
    )


def _prepare(text: str | None) -> str:
    return normalize_for_match(unicodedata.normalize("NFKC", text or "")).lower()


def text_similarity(a: str | None, b: str | None) -> float | None:
    """Ratio of two normalized texts; containment counts as 1.0. None when both are empty."""
    left, right = _prepare(a), _prepare(b)
    if not left and not right:
        return None
    if not left or not right:
        return 0.0
    if left in right or right in left:
        return 1.0
    return SequenceMatcher(None, left, right).ratio()


def finding_similarity(internal: InternalFinding, external: ExternalFinding) -> float:
    """Average of source and target similarity over whichever sides carry text."""
    parts = [
        s for s in (
            text_similarity(internal.source_text, external.source_text),
            text_similarity(internal.target_text, external.target_text),
        )
        if s is not None
    ]
    if not parts:
        return 0.0
    return sum(parts) / len(parts)


def compare_findings(
    internal: list[InternalFinding],
    external: list[ExternalFinding],
    *,
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> ParityResult:
    """Partition both finding lists into both_found / tool_only / external_only.

    Each internal finding is matched at most once.
    """
    result = ParityResult()
    used: set[int] = set()
    pending: list[ExternalFinding] = []

    # Exact pass
    for ext in external:
        candidates = [
            (idx, f) for idx, f in enumerate(internal)
            if idx not in used
            and f.segment_number is not None
            and f.segment_number == ext.segment_number
            and _same_file(f.file_name, ext.file_name)
        ]
        if not candidates:
            pending.append(ext)
            continue
        idx, best = min(
            candidates,
            key=lambda c: (0 if _category_matches(c[1], ext) else 1, _severity_distance(c[1], ext), c[0]),
        )
        used.add(idx)
        result.both_found.append(ParityMatch("both_found", internal=best, external=ext, match_type="exact"))

    # Fuzzy pass
    for ext in pending:
        best_idx = None
        best_score = 0.0
        for idx, f in enumerate(internal):
            if idx in used or not _same_file(f.file_name, ext.file_name):
                continue
            if not _category_matches(f, ext) or _severity_distance(f, ext) > 1:
                continue
            score = finding_similarity(f, ext)
            if score >= similarity_threshold and score > best_score:
                best_idx, best_score = idx, score
        if best_idx is None:
            result.external_only.append(ParityMatch("external_only", external=ext))
            continue
        used.add(best_idx)
        result.both_found.append(ParityMatch(
            "both_found", internal=internal[best_idx], external=ext, match_type="fuzzy", similarity=best_score,
        ))

    for idx, f in enumerate(internal):
        if idx not in used:
            result.tool_only.append(ParityMatch("tool_only", internal=f))

    logger.info(
        "[parity] tool=%s external=%s both=%s tool_only=%s external_only=%s",
        len(internal), len(external), len(result.both_found), len(result.tool_only), len(result.external_only),
    )
    return result
