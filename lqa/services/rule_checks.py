"""Deterministic L1 checks over source/target segment pairs.

Segment-level checks take one :class:`SegmentRecord` and return a list of
:class:`RuleHit`; file-level checks (consistency, key terms) take the whole
ordered segment list. No check touches the network or the database.
"""
from __future__ import annotations

import logging
import re
import unicodedata
from collections import Counter
from dataclasses import dataclass

from lqa.domain import CustomRuleDef, GlossaryEntry, SegmentRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleHit:
    rule_id: str
    category: str
    severity: str
    description: str
    suggested_fix: str | None = None
    segment: SegmentRecord | None = None


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

TAG_RE = re.compile(r"</?[A-Za-z][\w:.-]*(?:\s[^<>]*?)?/?>")
PLACEHOLDER_RE = re.compile(
    r"\{\{\s*[\w.]+\s*\}\}"  # {{var}}
    r"|\$\{[\w.]+\}"  # ${name}
    r"|%\d+\$[sdf@]"  # %1$s
    r"|%[sdf@]"  # %s %d %f %@
    r"|\{\w+\}"  # {0} {name}
)
NUMBER_RE = re.compile(r"\d(?:[\d.,'\u00a0\u202f]*\d)?")
URL_RE = re.compile(r"https?://[^\s<>\"')\]]+")
UPPERCASE_RE = re.compile(r"\b[A-Z]{2,}\b")
CAMELCASE_RE = re.compile(r"\b[a-z]+[A-Z][A-Za-z]*\b|\b[A-Z][a-z]+[A-Z][A-Za-z]*\b")
REPEATED_WORD_RE = re.compile(r"\b(\w+)\s+\1\b", re.IGNORECASE)
NUMBERS_ONLY_RE = re.compile(r"^[\d\s.,:;%+\-/()]+$")
PROPER_NOUN_RE = re.compile(r"^[A-Z][\w\-]*$")

BRACKET_PAIRS = (("(", ")"), ("[", "]"), ("{", "}"), ("「", "」"), ("【", "】"))
QUOTE_CHARS = ('"', "'")

END_PUNCTUATION = frozenset(".!?:;。！？：；…")
FULLWIDTH_TO_HALFWIDTH = {"。": ".", "！": "!", "？": "?", "：": ":", "；": ";"}
# Target languages that do not end sentences with a period.
NO_PERIOD_LANGS = ("th", "lo", "km", "my")


def normalize_text(text: str) -> str:
    """NFKC + trim + collapse internal whitespace."""
    return re.sub(r"\s+", " ", unicodedata.normalize("NFKC", text or "")).strip()


# ---------------------------------------------------------------------------
# Content
# ---------------------------------------------------------------------------

def check_untranslated(seg: SegmentRecord) -> list[RuleHit]:
    if seg.source_text.strip() and not seg.target_text.strip():
        return [RuleHit(
            "untranslated", "completeness", "critical",
            "Target text is empty",
            "Translate the segment",
        )]
    return []


def check_target_identical(seg: SegmentRecord) -> list[RuleHit]:
    src = seg.source_text.strip()
    tgt = seg.target_text.strip()
    if not src or src != tgt:
        return []
    if NUMBERS_ONLY_RE.match(src) or PROPER_NOUN_RE.match(src):
        return []
    return [RuleHit(
        "target_identical", "completeness", "major",
        "Target text is identical to source text",
        "Verify the segment was translated",
    )]


# ---------------------------------------------------------------------------
# Tags / placeholders
# ---------------------------------------------------------------------------

def _tags(text: str) -> list[str]:
    return [re.sub(r"\s+", " ", m.group(0)) for m in TAG_RE.finditer(text)]


def check_tags(seg: SegmentRecord) -> list[RuleHit]:
    if not seg.target_text.strip():
        return []
    src_tags = _tags(seg.source_text)
    tgt_tags = _tags(seg.target_text)
    if not src_tags and not tgt_tags:
        return []
    hits: list[RuleHit] = []
    missing = Counter(src_tags) - Counter(tgt_tags)
    extra = Counter(tgt_tags) - Counter(src_tags)
    if missing:
        hits.append(RuleHit(
            "tag_missing", "tag_integrity", "critical",
            f"Tags missing in target: {', '.join(sorted(missing))}",
            "Restore the source tags in the target",
        ))
    if extra:
        hits.append(RuleHit(
            "tag_extra", "tag_integrity", "critical",
            f"Unexpected tags in target: {', '.join(sorted(extra))}",
            "Remove tags that are not in the source",
        ))
    if not missing and not extra and src_tags != tgt_tags:
        hits.append(RuleHit(
            "tag_order", "tag_integrity", "minor",
            "Tag order differs from source",
            "Check that tag order still produces valid markup",
        ))
    return hits


def check_placeholders(seg: SegmentRecord) -> list[RuleHit]:
    if not seg.target_text.strip():
        return []
    src = Counter(PLACEHOLDER_RE.findall(seg.source_text))
    tgt = Counter(PLACEHOLDER_RE.findall(seg.target_text))
    if src == tgt:
        return []
    missing = sorted((src - tgt).elements())
    extra = sorted((tgt - src).elements())
    parts = []
    if missing:
        parts.append(f"missing {', '.join(missing)}")
    if extra:
        parts.append(f"unexpected {', '.join(extra)}")
    return [RuleHit(
        "placeholder_mismatch", "placeholder_integrity", "critical",
        f"Placeholder mismatch: {'; '.join(parts)}",
        "Keep every source placeholder unchanged in the target",
    )]


# ---------------------------------------------------------------------------
# Numbers
# ---------------------------------------------------------------------------

def normalize_number(token: str) -> str:
    """Canonical form of a number token across locale separators.

    ``1,234.5`` / ``1.234,5`` / ``1 234,5`` all become ``1234.5``; a single
    separator followed by exactly three digits is read as a thousands separator.
    """
    token = "".join(str(unicodedata.decimal(ch, ch)) if ch.isdigit() else ch for ch in token)
    token = re.sub(r"[\s\u00a0\u202f']", "", token)
    has_dot = "." in token
    has_comma = "," in token
    if has_dot and has_comma:
        decimal_sep = "." if token.rfind(".") > token.rfind(",") else ","
        thousands_sep = "," if decimal_sep == "." else "."
        token = token.replace(thousands_sep, "").replace(decimal_sep, ".")
    elif has_dot or has_comma:
        sep = "." if has_dot else ","
        parts = token.split(sep)
        if len(parts) > 2 or len(parts[-1]) == 3:
            token = "".join(parts)
        else:
            token = ".".join(parts)
    int_part, _, frac = token.partition(".")
    int_part = int_part.lstrip("0") or "0"
    frac = frac.rstrip("0")
    return f"{int_part}.{frac}" if frac else int_part


def _numbers(text: str) -> Counter:
    return Counter(normalize_number(m.group(0)) for m in NUMBER_RE.finditer(text))


def check_numbers(seg: SegmentRecord) -> list[RuleHit]:
    if not seg.target_text.strip():
        return []
    src = _numbers(seg.source_text)
    tgt = _numbers(seg.target_text)
    if src == tgt:
        return []
    missing = sorted((src - tgt).elements())
    extra = sorted((tgt - src).elements())
    detail = []
    if missing:
        detail.append(f"missing {', '.join(missing)}")
    if extra:
        detail.append(f"unexpected {', '.join(extra)}")
    return [RuleHit(
        "number_mismatch", "number_format", "major",
        f"Number mismatch: {'; '.join(detail)}",
        "Check numbers against the source",
    )]


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def check_double_spaces(seg: SegmentRecord) -> list[RuleHit]:
    if re.search(r" {2,}", seg.target_text):
        return [RuleHit(
            "double_space", "spacing", "minor",
            "Double spaces detected in target text",
            "Replace multiple consecutive spaces with a single space",
        )]
    return []


def check_edge_whitespace(seg: SegmentRecord) -> list[RuleHit]:
    if not seg.target_text:
        return []
    hits: list[RuleHit] = []
    src_lead = re.match(r"^\s*", seg.source_text).group(0)
    tgt_lead = re.match(r"^\s*", seg.target_text).group(0)
    src_trail = re.search(r"\s*$", seg.source_text).group(0)
    tgt_trail = re.search(r"\s*$", seg.target_text).group(0)
    if src_lead != tgt_lead:
        hits.append(RuleHit(
            "leading_whitespace", "spacing", "minor",
            "Leading whitespace mismatch between source and target",
            "Add leading whitespace to match source" if src_lead else "Remove leading whitespace from target",
        ))
    if src_trail != tgt_trail:
        hits.append(RuleHit(
            "trailing_whitespace", "spacing", "minor",
            "Trailing whitespace mismatch between source and target",
            "Add trailing whitespace to match source" if src_trail else "Remove trailing whitespace from target",
        ))
    return hits


def _bracket_balanced(text: str, open_ch: str, close_ch: str) -> bool:
    depth = 0
    for ch in text:
        if ch == open_ch:
            depth += 1
        elif ch == close_ch:
            depth -= 1
            if depth < 0:
                return False
    return depth == 0


def check_unpaired_brackets(seg: SegmentRecord) -> list[RuleHit]:
    text = seg.target_text
    hits: list[RuleHit] = []
    for open_ch, close_ch in BRACKET_PAIRS:
        if not _bracket_balanced(text, open_ch, close_ch):
            hits.append(RuleHit(
                f"unpaired_bracket:{open_ch}{close_ch}", "punctuation", "minor",
                f"Unpaired bracket {open_ch}{close_ch} in target text",
                "Balance opening and closing brackets",
            ))
    for quote in QUOTE_CHARS:
        if text.count(quote) % 2 == 1 and seg.source_text.count(quote) % 2 == 0:
            hits.append(RuleHit(
                f"unpaired_quote:{quote}", "punctuation", "minor",
                f"Unpaired quote {quote} in target text",
                "Balance opening and closing quotes",
            ))
    return hits


def check_urls(seg: SegmentRecord) -> list[RuleHit]:
    if not seg.target_text.strip():
        return []
    src_urls = set(URL_RE.findall(seg.source_text))
    if not src_urls:
        return []
    missing = sorted(src_urls - set(URL_RE.findall(seg.target_text)))
    if not missing:
        return []
    return [RuleHit(
        "url_mismatch", "url_integrity", "major",
        f"URL missing or altered in target: {', '.join(missing)}",
        "Copy URLs from the source unchanged",
    )]


def _end_char(text: str) -> str | None:
    stripped = text.rstrip()
    if not stripped:
        return None
    ch = stripped[-1]
    if ch not in END_PUNCTUATION:
        return None
    return FULLWIDTH_TO_HALFWIDTH.get(ch, ch)


def check_end_punctuation(seg: SegmentRecord) -> list[RuleHit]:
    if not seg.target_text.strip() or not seg.source_text.strip():
        return []
    src_end = _end_char(seg.source_text)
    tgt_end = _end_char(seg.target_text)
    if src_end == tgt_end:
        return []
    if src_end == "." and tgt_end is None and seg.target_lang.lower().startswith(NO_PERIOD_LANGS):
        return []
    return [RuleHit(
        "end_punctuation", "punctuation", "minor",
        f"End punctuation mismatch: source {src_end or 'none'!r}, target {tgt_end or 'none'!r}",
        "Match the sentence-final punctuation of the source",
    )]


# ---------------------------------------------------------------------------
# Capitalization / repeated words
# ---------------------------------------------------------------------------

def check_capitalization(seg: SegmentRecord) -> list[RuleHit]:
    if not seg.target_text.strip():
        return []
    terms = set(UPPERCASE_RE.findall(seg.source_text)) | set(CAMELCASE_RE.findall(seg.source_text))
    missing = sorted(t for t in terms if t not in seg.target_text)
    if not missing:
        return []
    return [RuleHit(
        "capitalization", "capitalization", "minor",
        f"Capitalized terms from source missing in target: {', '.join(missing)}",
        "Keep acronyms and product names as in the source",
    )]


def check_repeated_words(seg: SegmentRecord) -> list[RuleHit]:
    repeated = {m.group(1).lower() for m in REPEATED_WORD_RE.finditer(seg.target_text)}
    if not repeated:
        return []
    in_source = {m.group(1).lower() for m in REPEATED_WORD_RE.finditer(seg.source_text)}
    repeated -= in_source
    if not repeated:
        return []
    return [RuleHit(
        "repeated_word", "repeated_word", "minor",
        f"Repeated word in target: {', '.join(sorted(repeated))}",
        "Remove the duplicated word",
    )]


# ---------------------------------------------------------------------------
# Glossary
# ---------------------------------------------------------------------------

def contains_term(text: str, term: str, case_sensitive: bool) -> bool:
    text = unicodedata.normalize("NFKC", text or "")
    term = unicodedata.normalize("NFKC", term or "")
    if not term:
        return False
    if case_sensitive:
        return term in text
    return term.lower() in text.lower()


def check_glossary(seg: SegmentRecord, terms: list[GlossaryEntry]) -> list[RuleHit]:
    if not terms or not seg.target_text.strip():
        return []
    hits: list[RuleHit] = []
    for term in terms:
        if not contains_term(seg.source_text, term.source_term, term.case_sensitive):
            continue
        if contains_term(seg.target_text, term.target_term, term.case_sensitive):
            continue
        hits.append(RuleHit(
            f"glossary:{term.source_term}", "glossary_compliance", "major",
            f'Glossary term "{term.source_term}" should be translated as "{term.target_term}"',
            f'Use "{term.target_term}"',
        ))
    return hits


# ---------------------------------------------------------------------------
# Custom rules
# ---------------------------------------------------------------------------

def compile_custom_rules(rules: list[CustomRuleDef]) -> list[tuple[CustomRuleDef, re.Pattern]]:
    """Compile active rules; invalid patterns are logged and skipped."""
    compiled = []
    for rule in rules:
        try:
            compiled.append((rule, re.compile(rule.pattern)))
        except re.error as e:
            logger.warning("[l1] custom rule %s has invalid pattern %r: %s", rule.id, rule.pattern, e)
    return compiled


def check_custom_rules(seg: SegmentRecord, compiled: list[tuple[CustomRuleDef, re.Pattern]]) -> list[RuleHit]:
    hits: list[RuleHit] = []
    for rule, pattern in compiled:
        if pattern.search(seg.target_text):
            hits.append(RuleHit(
                f"custom:{rule.id}", "custom_rule", "major",
                rule.description or f"Custom rule matched: {rule.name}",
            ))
    return hits


SEGMENT_CHECKS = (
    check_untranslated,
    check_target_identical,
    check_tags,
    check_placeholders,
    check_numbers,
    check_double_spaces,
    check_edge_whitespace,
    check_unpaired_brackets,
    check_urls,
    check_end_punctuation,
    check_capitalization,
    check_repeated_words,
)


# ---------------------------------------------------------------------------
# File-level consistency
# ---------------------------------------------------------------------------

def _first_variants(segments: list[SegmentRecord], key_of, variant_of) -> list[SegmentRecord]:
    """Segments whose variant differs from the first one seen for the same key."""
    groups: dict[str, list[SegmentRecord]] = {}
    for seg in segments:
        key = key_of(seg)
        if key:
            groups.setdefault(key, []).append(seg)
    flagged: list[SegmentRecord] = []
    for segs in groups.values():
        if len(segs) < 2:
            continue
        seen: dict[str, SegmentRecord] = {}
        for seg in segs:
            seen.setdefault(variant_of(seg), seg)
        if len(seen) > 1:
            flagged.extend(list(seen.values())[1:])
    return flagged


def check_same_source_diff_target(segments: list[SegmentRecord]) -> list[RuleHit]:
    flagged = _first_variants(
        [s for s in segments if s.target_text.strip()],
        lambda s: normalize_text(s.source_text),
        lambda s: normalize_text(s.target_text),
    )
    return [
        RuleHit(
            "consistency_source", "consistency", "minor",
            f'Inconsistent translation: same source text "{seg.source_text[:50]}" has different translations',
            "Check if the translation should match other occurrences",
            segment=seg,
        )
        for seg in flagged
    ]


def check_same_target_diff_source(segments: list[SegmentRecord]) -> list[RuleHit]:
    flagged = _first_variants(
        segments,
        lambda s: normalize_text(s.target_text),
        lambda s: normalize_text(s.source_text),
    )
    return [
        RuleHit(
            "consistency_target", "consistency", "minor",
            f'Same translation used for different sources: "{seg.target_text[:50]}"',
            "Verify if the same translation is appropriate for different source texts",
            segment=seg,
        )
        for seg in flagged
    ]


def check_key_term_consistency(segments: list[SegmentRecord], terms: list[GlossaryEntry]) -> list[RuleHit]:
    """A glossary term rendered correctly in some segments and not in others."""
    hits: list[RuleHit] = []
    for term in terms:
        matching = [s for s in segments if contains_term(s.source_text, term.source_term, term.case_sensitive)]
        if len(matching) < 2:
            continue
        without = [s for s in matching if not contains_term(s.target_text, term.target_term, term.case_sensitive)]
        if not without or len(without) == len(matching):
            continue
        for seg in without:
            hits.append(RuleHit(
                f"key_term:{term.source_term}", "consistency", "major",
                f'Key term inconsistency: "{term.source_term}" translated inconsistently, expected "{term.target_term}"',
                f'Use "{term.target_term}" consistently for "{term.source_term}"',
                segment=seg,
            ))
    return hits
