"""Pytest fixtures for the LQA pipeline tests."""
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from lqa.database import get_db
from lqa.main import app, get_audit, get_scheduler

TENANT_ID = "11111111-1111-1111-1111-111111111111"


@pytest.fixture
def tenant_id() -> str:
    return TENANT_ID


@pytest.fixture
def api_db():
    """Mock AsyncSession handed to every route through the get_db override."""
    db = AsyncMock()
    db.add = MagicMock()
    db.flush = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    return db


@pytest.fixture
def api_audit():
    audit = MagicMock()
    audit.write = AsyncMock()
    return audit


@pytest.fixture
def api_scheduler():
    scheduler = MagicMock()
    scheduler.trigger = AsyncMock()
    return scheduler


@pytest.fixture
def client(api_db, api_audit, api_scheduler) -> TestClient:
    """FastAPI test client with the session, audit writer and scheduler overridden."""

    async def _get_db():
        yield api_db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_audit] = lambda: api_audit
    app.dependency_overrides[get_scheduler] = lambda: api_scheduler
    yield TestClient(app)
    app.dependency_overrides.clear()
