"""
Pipeline run context.

``PipelineServices`` holds the long-lived collaborators (session factory, AI
tier client, audit writer, reference-data sources, recompute scheduler). It is
built once per process and passed explicitly; nothing is a module global.

``StageContext`` is the per-job view a stage runs with: one session, the
file row and its project, plus the event fields.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lqa import config as app_config
from lqa.models import Project, QaFile
from lqa.services.ai_tiers import TierClient
from lqa.services.audit import AuditWriter
from lqa.services.llm_provider import LLMProvider, create_provider
from lqa.services.score_scheduler import RecomputeScheduler
from lqa.services.sources import (
    DbGlossarySource,
    DbSegmentSource,
    DbTaxonomySource,
    GlossarySource,
    SegmentSource,
    TaxonomySource,
)
from lqa.worker.config import WorkerConfig

logger = logging.getLogger(__name__)


@dataclass
class PipelineServices:
    session_factory: async_sessionmaker[AsyncSession]
    tier_client: TierClient
    audit: AuditWriter
    scheduler: RecomputeScheduler
    config: WorkerConfig
    segment_source: SegmentSource = field(default_factory=DbSegmentSource)
    glossary_source: GlossarySource = field(default_factory=DbGlossarySource)
    taxonomy_source: TaxonomySource = field(default_factory=DbTaxonomySource)


@dataclass
class StageContext:
    """Holds run-scoped state for one process-file job."""

    db: AsyncSession
    services: PipelineServices
    tenant_id: str
    file: QaFile
    project: Project
    mode: str = "economy"
    batch_id: str | None = None
    user_id: str | None = None

    @property
    def file_id(self) -> str:
        return str(self.file.id)

    @property
    def config(self) -> WorkerConfig:
        return self.services.config


def build_provider_factory(provider_config: dict | None = None) -> Callable[[str, str], LLMProvider]:
    """Factory for TierClient: (model, provider_name) -> provider, using env credentials."""
    base = provider_config or {
        "options": {"temperature": 0.1},
        "openai": {"api_key": app_config.OPENAI_API_KEY, "base_url": app_config.OPENAI_BASE_URL},
        "vertex": {"project_id": app_config.VERTEX_PROJECT_ID, "location": app_config.VERTEX_LOCATION},
    }

    def factory(model: str, provider_name: str) -> LLMProvider:
        logger.info("[ai] creating %s provider for model %s", provider_name, model)
        return create_provider(provider_name, {**base, "model": model})

    return factory


def build_pipeline_services(
    session_factory: async_sessionmaker[AsyncSession],
    cfg: WorkerConfig,
    *,
    tier_client: TierClient | None = None,
    audit: AuditWriter | None = None,
) -> PipelineServices:
    audit = audit or AuditWriter()
    return PipelineServices(
        session_factory=session_factory,
        tier_client=tier_client or TierClient(build_provider_factory(), timeout_seconds=cfg.ai_call_timeout_seconds),
        audit=audit,
        scheduler=RecomputeScheduler(
            session_factory,
            audit,
            debounce_ms=cfg.score_debounce_ms,
            default_threshold=cfg.default_auto_pass_threshold,
            new_pair_review_count=cfg.new_pair_review_file_count,
        ),
        config=cfg,
    )
