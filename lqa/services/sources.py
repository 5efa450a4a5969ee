"""Reference-data sources the stages read through (segments, glossary, taxonomy).

Default implementations read the pipeline tables; tests and alternative
deployments pass their own objects with the same methods.
"""
from __future__ import annotations

from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from lqa.domain import CategoryDef, CustomRuleDef, GlossaryEntry, SegmentRecord
from lqa.worker import db as pipeline_db


class SegmentSource(Protocol):
    async def get_segments(self, db: AsyncSession, tenant_id, file_id) -> list[SegmentRecord]: ...


class GlossarySource(Protocol):
    async def get_terms(self, db: AsyncSession, tenant_id, glossary_id) -> list[GlossaryEntry]: ...


class TaxonomySource(Protocol):
    async def get_active_categories(self, db: AsyncSession, tenant_id) -> list[CategoryDef]: ...

    async def get_custom_rules(self, db: AsyncSession, tenant_id, project_id) -> list[CustomRuleDef]: ...


class DbSegmentSource:
    async def get_segments(self, db: AsyncSession, tenant_id, file_id) -> list[SegmentRecord]:
        return await pipeline_db.load_segments(db, tenant_id, file_id)


class DbGlossarySource:
    async def get_terms(self, db: AsyncSession, tenant_id, glossary_id) -> list[GlossaryEntry]:
        return await pipeline_db.load_glossary_terms(db, tenant_id, glossary_id)


class DbTaxonomySource:
    async def get_active_categories(self, db: AsyncSession, tenant_id) -> list[CategoryDef]:
        return await pipeline_db.load_active_categories(db, tenant_id)

    async def get_custom_rules(self, db: AsyncSession, tenant_id, project_id) -> list[CustomRuleDef]:
        return await pipeline_db.load_custom_rules(db, tenant_id, project_id)
