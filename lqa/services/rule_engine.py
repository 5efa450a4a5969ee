"""L1 rule engine: run every deterministic check over a file's segments."""
from __future__ import annotations

import logging

from lqa.domain import (
    SKIP_CONFIRMATION_STATES,
    CustomRuleDef,
    FindingDraft,
    GlossaryEntry,
    SegmentRecord,
    truncate_excerpt,
)
from lqa.services.rule_checks import (
    SEGMENT_CHECKS,
    RuleHit,
    check_custom_rules,
    check_glossary,
    check_key_term_consistency,
    check_same_source_diff_target,
    check_same_target_diff_source,
    compile_custom_rules,
)

logger = logging.getLogger(__name__)


def _to_draft(file_id: str, seg: SegmentRecord, hit: RuleHit) -> FindingDraft:
    return FindingDraft(
        file_id=file_id,
        stage="l1",
        layer="L1",
        rule_id=hit.rule_id,
        category=hit.category,
        severity=hit.severity,
        description=hit.description,
        segment_id=seg.id,
        source_excerpt=truncate_excerpt(seg.source_text),
        target_excerpt=truncate_excerpt(seg.target_text),
        suggested_fix=hit.suggested_fix,
    )


def run_rules(
    file_id: str,
    segments: list[SegmentRecord],
    *,
    glossary_terms: list[GlossaryEntry] | None = None,
    custom_rules: list[CustomRuleDef] | None = None,
    suppressed_categories: list[str] | set[str] | None = None,
) -> list[FindingDraft]:
    """Return L1 findings for *segments* (ordered by segment number).

    Pure and deterministic: the same input yields the same drafts, in the same
    order, with the same dedup keys. Duplicate keys within one run collapse to
    the first hit.
    """
    terms = list(glossary_terms or [])
    compiled = compile_custom_rules(list(custom_rules or []))
    suppressed = {c.strip().lower() for c in (suppressed_categories or []) if c}

    checked = sorted(
        (s for s in segments if s.confirmation_state not in SKIP_CONFIRMATION_STATES),
        key=lambda s: s.segment_number,
    )

    drafts: list[FindingDraft] = []
    for seg in checked:
        hits: list[RuleHit] = []
        for check in SEGMENT_CHECKS:
            hits.extend(check(seg))
        hits.extend(check_glossary(seg, terms))
        hits.extend(check_custom_rules(seg, compiled))
        drafts.extend(_to_draft(file_id, seg, h) for h in hits)

    file_hits = (
        check_same_source_diff_target(checked)
        + check_same_target_diff_source(checked)
        + check_key_term_consistency(checked, terms)
    )
    drafts.extend(_to_draft(file_id, h.segment, h) for h in file_hits)

    result: list[FindingDraft] = []
    seen: set[str] = set()
    for draft in drafts:
        if draft.category.lower() in suppressed:
            continue
        if draft.dedup_key in seen:
            continue
        seen.add(draft.dedup_key)
        result.append(draft)

    logger.debug("[l1] file %s: %s segments checked, %s findings", file_id, len(checked), len(result))
    return result
