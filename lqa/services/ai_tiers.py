"""
AI review tiers: L2 screening and L3 deep review.

Both tiers go through :class:`TierClient`, which walks an explicitly
enumerated, ordered model chain. A model that times out, errors, or returns
output that does not validate against the tier schema hands over to the next
model; only when the chain is exhausted does the stage fail.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Annotated, Callable, Literal

import openai
import pydantic
from google.api_core import exceptions as google_exceptions
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

from lqa.domain import (
    SKIP_CONFIRMATION_STATES,
    CategoryDef,
    FindingDraft,
    SegmentRecord,
    truncate_excerpt,
)
from lqa.services.llm_provider import ContentFilteredError, LLMProvider
from lqa.services.prompt_registry import render_prompt
from lqa.services.utils import parse_json_response
from lqa.worker.errors import FatalPipelineError, TransientProviderError, ValidationError

logger = logging.getLogger(__name__)

TIER_L2 = "L2"
TIER_L3 = "L3"

# Every model the pipeline may call, and the provider that serves it.
MODEL_CATALOG: dict[str, str] = {
    "gpt-4o-mini": "openai",
    "gpt-4o": "openai",
    "gemini-2.0-flash": "vertex",
    "gemini-1.5-pro": "vertex",
}

# Ordered chains: primary first, then fallbacks.
TIER_MODEL_CHAINS: dict[str, tuple[str, ...]] = {
    TIER_L2: ("gpt-4o-mini", "gemini-2.0-flash"),
    TIER_L3: ("gpt-4o", "gemini-1.5-pro"),
}

# Models a project may pin per tier.
TIER_ALLOWED_MODELS: dict[str, frozenset[str]] = {
    TIER_L2: frozenset({"gpt-4o-mini", "gemini-2.0-flash"}),
    TIER_L3: frozenset({"gpt-4o", "gemini-1.5-pro", "gpt-4o-mini", "gemini-2.0-flash"}),
}

TRANSIENT_KINDS = frozenset({"rate_limit", "timeout", "unknown"})
FATAL_KINDS = frozenset({"auth", "content_filter", "schema_mismatch"})


def resolve_model_chain(tier: str, pinned_model: str | None = None) -> list[str]:
    """Ordered model list for *tier*. A pinned model goes first; defaults follow, deduplicated."""
    if tier not in TIER_MODEL_CHAINS:
        raise ValidationError(f"Unknown AI tier: {tier!r}")
    chain = list(TIER_MODEL_CHAINS[tier])
    if pinned_model:
        if pinned_model not in TIER_ALLOWED_MODELS[tier]:
            raise ValidationError(f"Model {pinned_model!r} is not allowed for tier {tier}")
        chain = [pinned_model] + [m for m in chain if m != pinned_model]
    return chain


def classify_ai_error(error: BaseException) -> str:
    """rate_limit | timeout | auth | content_filter | schema_mismatch | unknown."""
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, openai.APITimeoutError,
                          google_exceptions.DeadlineExceeded)):
        return "timeout"
    if isinstance(error, (openai.RateLimitError, google_exceptions.ResourceExhausted,
                          google_exceptions.TooManyRequests)):
        return "rate_limit"
    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError,
                          google_exceptions.Unauthenticated, google_exceptions.PermissionDenied)):
        return "auth"
    if isinstance(error, ContentFilteredError):
        return "content_filter"
    if isinstance(error, (json.JSONDecodeError, pydantic.ValidationError)):
        return "schema_mismatch"
    if isinstance(error, openai.BadRequestError) and "content_filter" in str(error).lower():
        return "content_filter"
    return "unknown"


# ---------------------------------------------------------------------------
# Output schemas
# ---------------------------------------------------------------------------

Severity = Literal["critical", "major", "minor"]


def _clamp_confidence(value) -> float:
    try:
        return max(0.0, min(100.0, float(value)))
    except (TypeError, ValueError):
        return 0.0


def _lower_or_none(value):
    if isinstance(value, str):
        value = value.strip().lower()
        return value or None
    return value


Confidence = Annotated[float, BeforeValidator(_clamp_confidence)]
Category = Annotated[str, BeforeValidator(_lower_or_none)]
SeverityField = Annotated[Severity, BeforeValidator(_lower_or_none)]
SegmentRef = Annotated[str, BeforeValidator(lambda v: v if v is None else str(v))]


class L2SegmentResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    segment_id: SegmentRef = Field(alias="segmentId")
    escalate: bool = False
    category: Category | None = None
    severity: SeverityField | None = None
    description: str | None = None
    confidence: Confidence = 0.0


class L2Output(BaseModel):
    segments: list[L2SegmentResult] = Field(default_factory=list)


class L3Finding(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    segment_id: SegmentRef = Field(alias="segmentId")
    category: Category
    severity: SeverityField
    description: str
    suggested_fix: str | None = Field(default=None, alias="suggestedFix")
    confidence: Confidence = 0.0


class L3Output(BaseModel):
    findings: list[L3Finding] = Field(default_factory=list)


TIER_SCHEMAS: dict[str, type[BaseModel]] = {TIER_L2: L2Output, TIER_L3: L3Output}


# ---------------------------------------------------------------------------
# Tier client
# ---------------------------------------------------------------------------

@dataclass
class TierResult:
    output: BaseModel
    model: str
    fallback_used: bool = False


class TierClient:
    """Invokes a tier through its ordered model chain.

    *provider_factory(model_name, provider_name)* builds an :class:`LLMProvider`;
    instances are cached on this client, which is constructed once per process.
    """

    def __init__(
        self,
        provider_factory: Callable[[str, str], LLMProvider],
        *,
        timeout_seconds: float = 120.0,
    ):
        self._provider_factory = provider_factory
        self._providers: dict[str, LLMProvider] = {}
        self.timeout_seconds = timeout_seconds

    def _provider(self, model: str) -> LLMProvider:
        provider = self._providers.get(model)
        if provider is None:
            provider_name = MODEL_CATALOG.get(model)
            if provider_name is None:
                raise ValidationError(f"Model {model!r} is not in the model catalog")
            provider = self._provider_factory(model, provider_name)
            self._providers[model] = provider
        return provider

    async def _call(self, tier: str, model: str, prompt: str) -> BaseModel:
        provider = self._provider(model)
        raw = await asyncio.wait_for(
            provider.generate(prompt, json_mode=True),
            timeout=self.timeout_seconds,
        )
        data = parse_json_response(raw)
        return TIER_SCHEMAS[tier].model_validate(data)

    async def invoke(self, tier: str, prompt: str, *, pinned_model: str | None = None) -> TierResult:
        chain = resolve_model_chain(tier, pinned_model)
        failures: list[tuple[str, str, str]] = []
        for idx, model in enumerate(chain):
            try:
                output = await self._call(tier, model, prompt)
            except ValidationError:
                raise
            except Exception as e:
                kind = classify_ai_error(e)
                failures.append((model, kind, str(e)[:300]))
                logger.warning("[ai] %s model %s failed (%s): %s", tier, model, kind, e)
                continue
            if idx > 0:
                logger.info("[ai] %s served by fallback model %s", tier, model)
            return TierResult(output=output, model=model, fallback_used=idx > 0)

        summary = "; ".join(f"{m}: {k}" for m, k, _ in failures)
        if any(kind in TRANSIENT_KINDS for _, kind, _ in failures):
            last_transient = next(k for _, k, _ in reversed(failures) if k in TRANSIENT_KINDS)
            raise TransientProviderError(
                f"All {tier} models failed ({summary})", kind=last_transient, model=failures[-1][0]
            )
        raise FatalPipelineError(f"All {tier} models failed ({summary})")


# ---------------------------------------------------------------------------
# Prompt building
# ---------------------------------------------------------------------------

def chunk_segments(segments: list[SegmentRecord], max_chars: int = 30000) -> list[list[SegmentRecord]]:
    """Group segments so each chunk's source+target length stays under *max_chars*.

    A segment is never split; one that is longer on its own gets its own chunk.
    """
    chunks: list[list[SegmentRecord]] = []
    current: list[SegmentRecord] = []
    size = 0
    for seg in segments:
        seg_size = len(seg.source_text) + len(seg.target_text)
        if current and size + seg_size > max_chars:
            chunks.append(current)
            current, size = [], 0
        current.append(seg)
        size += seg_size
    if current:
        chunks.append(current)
    return chunks


def _segments_block(segments: list[SegmentRecord]) -> str:
    return "\n".join(
        json.dumps(
            {"segmentId": s.id, "number": s.segment_number, "source": s.source_text, "target": s.target_text},
            ensure_ascii=False,
        )
        for s in segments
    )


def _categories_block(categories: list[CategoryDef]) -> str:
    if not categories:
        return "- accuracy\n- fluency\n- terminology\n- style\n- other"
    return "\n".join(
        f"- {c.category}" + (f": {c.description}" if c.description else "") for c in categories
    )


def _languages(segments: list[SegmentRecord]) -> tuple[str, str]:
    first = segments[0] if segments else None
    return (first.source_lang or "source") if first else "source", (first.target_lang or "target") if first else "target"


def build_l2_prompt(
    segments: list[SegmentRecord],
    l1_findings: list[FindingDraft],
    categories: list[CategoryDef],
    *,
    version: str = "v1",
) -> str:
    ids = {s.id for s in segments}
    l1_lines = [
        f"- segment {f.segment_id}: [{f.category}/{f.severity}] {f.description}"
        for f in l1_findings
        if f.segment_id in ids
    ]
    source_lang, target_lang = _languages(segments)
    return render_prompt(
        "l2_screening", version,
        source_lang=source_lang,
        target_lang=target_lang,
        categories=_categories_block(categories),
        l1_findings="\n".join(l1_lines) or "(none)",
        segments=_segments_block(segments),
    )


def build_l3_prompt(
    segments: list[SegmentRecord],
    hints: dict[str, str],
    categories: list[CategoryDef],
    *,
    version: str = "v1",
) -> str:
    hint_lines = [f"- segment {sid}: {hint}" for sid, hint in hints.items() if any(s.id == sid for s in segments)]
    source_lang, target_lang = _languages(segments)
    return render_prompt(
        "l3_review", version,
        source_lang=source_lang,
        target_lang=target_lang,
        categories=_categories_block(categories),
        hints="\n".join(hint_lines) or "(none)",
        segments=_segments_block(segments),
    )


# ---------------------------------------------------------------------------
# Tier runs
# ---------------------------------------------------------------------------

@dataclass
class ScreeningResult:
    findings: list[FindingDraft]
    escalated_segment_ids: list[str]
    hints: dict[str, str]


def _reviewable(segments: list[SegmentRecord]) -> list[SegmentRecord]:
    return [s for s in segments if s.confirmation_state not in SKIP_CONFIRMATION_STATES and s.target_text.strip()]


async def run_l2_screening(
    client: TierClient,
    file_id: str,
    segments: list[SegmentRecord],
    l1_findings: list[FindingDraft],
    categories: list[CategoryDef],
    *,
    pinned_model: str | None = None,
    max_chars: int = 30000,
    prompt_version: str = "v1",
) -> ScreeningResult:
    """Screen every reviewable segment; returns L2 findings plus the ids to escalate."""
    by_id = {s.id: s for s in segments}
    findings: dict[str, FindingDraft] = {}
    escalated: list[str] = []
    hints: dict[str, str] = {}

    for chunk in chunk_segments(_reviewable(segments), max_chars):
        prompt = build_l2_prompt(chunk, l1_findings, categories, version=prompt_version)
        result = await client.invoke(TIER_L2, prompt, pinned_model=pinned_model)
        chunk_ids = {s.id for s in chunk}
        for item in result.output.segments:
            if item.segment_id not in chunk_ids:
                logger.warning("[ai] file %s: L2 returned unknown segment %s, dropped", file_id, item.segment_id)
                continue
            if item.escalate and item.segment_id not in escalated:
                escalated.append(item.segment_id)
                if item.category or item.description:
                    hints[item.segment_id] = f"{item.category or 'unknown'}: {item.description or ''}".strip()
            if item.category and item.severity and item.description:
                seg = by_id[item.segment_id]
                draft = FindingDraft(
                    file_id=file_id,
                    stage="l2",
                    layer="L2",
                    rule_id=f"ai:{item.category}",
                    category=item.category,
                    severity=item.severity,
                    description=item.description,
                    segment_id=seg.id,
                    source_excerpt=truncate_excerpt(seg.source_text),
                    target_excerpt=truncate_excerpt(seg.target_text),
                    confidence=item.confidence,
                    ai_model=result.model,
                )
                findings.setdefault(draft.dedup_key, draft)

    return ScreeningResult(findings=list(findings.values()), escalated_segment_ids=escalated, hints=hints)


async def run_l3_review(
    client: TierClient,
    file_id: str,
    segments: list[SegmentRecord],
    escalated_segment_ids: list[str],
    categories: list[CategoryDef],
    *,
    hints: dict[str, str] | None = None,
    pinned_model: str | None = None,
    max_chars: int = 30000,
    prompt_version: str = "v1",
) -> list[FindingDraft]:
    """Deep review of the escalated subset. No escalations means no AI call."""
    wanted = set(escalated_segment_ids)
    subset = [s for s in _reviewable(segments) if s.id in wanted]
    if not subset:
        return []
    by_id = {s.id: s for s in subset}
    findings: dict[str, FindingDraft] = {}

    for chunk in chunk_segments(subset, max_chars):
        prompt = build_l3_prompt(chunk, hints or {}, categories, version=prompt_version)
        result = await client.invoke(TIER_L3, prompt, pinned_model=pinned_model)
        chunk_ids = {s.id for s in chunk}
        for item in result.output.findings:
            if item.segment_id not in chunk_ids:
                logger.warning("[ai] file %s: L3 returned unknown segment %s, dropped", file_id, item.segment_id)
                continue
            seg = by_id[item.segment_id]
            draft = FindingDraft(
                file_id=file_id,
                stage="l3",
                layer="L3",
                rule_id=f"ai:{item.category}",
                category=item.category,
                severity=item.severity,
                description=item.description,
                segment_id=seg.id,
                source_excerpt=truncate_excerpt(seg.source_text),
                target_excerpt=truncate_excerpt(seg.target_text),
                suggested_fix=item.suggested_fix,
                confidence=item.confidence,
                ai_model=result.model,
            )
            findings.setdefault(draft.dedup_key, draft)

    return list(findings.values())
