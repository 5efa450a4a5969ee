"""Batch-wide consistency analysis run once per completed batch (pure, no DB)."""
from __future__ import annotations

import logging
from collections import OrderedDict

from lqa.domain import CrossFileFinding, GlossaryEntry, SegmentRecord
from lqa.services.rule_checks import contains_term
from lqa.services.utils import normalize_for_match

logger = logging.getLogger(__name__)


def _group_by_source(segments_by_file: dict[str, list[SegmentRecord]]) -> "OrderedDict[str, list[tuple[str, SegmentRecord]]]":
    groups: OrderedDict[str, list[tuple[str, SegmentRecord]]] = OrderedDict()
    for file_id in sorted(segments_by_file):
        for seg in segments_by_file[file_id]:
            key = normalize_for_match(seg.source_text)
            if not key:
                continue
            groups.setdefault(key, []).append((file_id, seg))
    return groups


def find_inconsistent_translations(segments_by_file: dict[str, list[SegmentRecord]]) -> list[CrossFileFinding]:
    """Same normalized source translated more than one way by at least two files of the batch."""
    results: list[CrossFileFinding] = []
    for source, members in _group_by_source(segments_by_file).items():
        targets: list[str] = []
        file_ids: list[str] = []
        for file_id, seg in members:
            target = normalize_for_match(seg.target_text)
            # Empty targets are reported by the untranslated check.
            if not target:
                continue
            if target not in targets:
                targets.append(target)
            if file_id not in file_ids:
                file_ids.append(file_id)
        # Single-file inconsistency is the L1 consistency check.
        if len(targets) < 2 or len(file_ids) < 2:
            continue
        results.append(CrossFileFinding(
            category="consistency",
            severity="minor",
            description=(
                f'Source "{source[:120]}" has {len(targets)} different translations '
                f"across {len(file_ids)} file(s)"
            ),
            rule_id=f"cross_file:source:{source}",
            file_ids=sorted(file_ids),
            source_text=source,
            targets=targets,
        ))
    return results


def find_glossary_conflicts(
    segments_by_file: dict[str, list[SegmentRecord]],
    glossary_terms: list[GlossaryEntry],
) -> list[CrossFileFinding]:
    """Glossary term rendered without its approved target in at least one of several files."""
    results: list[CrossFileFinding] = []
    for term in glossary_terms:
        involved: list[str] = []
        deviating: list[str] = []
        for file_id in sorted(segments_by_file):
            using = [s for s in segments_by_file[file_id] if contains_term(s.source_text, term.source_term, term.case_sensitive)]
            if not using:
                continue
            involved.append(file_id)
            if any(not contains_term(s.target_text, term.target_term, term.case_sensitive) for s in using):
                deviating.append(file_id)
        if len(involved) < 2 or not deviating:
            continue
        results.append(CrossFileFinding(
            category="terminology",
            severity="major",
            description=(
                f'Glossary term "{term.source_term}" is not consistently translated as '
                f'"{term.target_term}" across the batch ({len(deviating)} of {len(involved)} files deviate)'
            ),
            rule_id=f"cross_file:glossary:{term.source_term}",
            file_ids=involved,
            source_text=term.source_term,
            targets=[term.target_term],
        ))
    return results


def analyze_batch(
    segments_by_file: dict[str, list[SegmentRecord]],
    glossary_terms: list[GlossaryEntry] | None = None,
) -> list[CrossFileFinding]:
    """All cross-file findings for one batch, source-text groups first, then glossary conflicts."""
    findings = find_inconsistent_translations(segments_by_file)
    findings.extend(find_glossary_conflicts(segments_by_file, list(glossary_terms or [])))
    logger.info(
        "[cross-file] %s files analysed, %s finding(s)",
        len(segments_by_file), len(findings),
    )
    return findings
