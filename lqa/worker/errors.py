"""
Pipeline error taxonomy and classification.

Every stage failure is funnelled through :func:`classify_stage_error` so the
orchestrator makes one decision per exception: retry the stage with backoff,
or move the file to ``error``.
"""
from __future__ import annotations

import asyncio
import logging

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Base class for classified pipeline failures."""

    error_type = "pipeline_error"
    retryable = False


class ValidationError(PipelineError):
    """Malformed input (missing segments, unknown model, bad stage order). Never retried."""

    error_type = "validation_error"


class TransientProviderError(PipelineError):
    """AI call timeout / rate limit after the whole fallback chain was tried."""

    error_type = "transient_provider_error"
    retryable = True

    def __init__(self, message: str, *, kind: str = "unknown", model: str | None = None):
        super().__init__(message)
        self.kind = kind
        self.model = model


class PersistenceError(PipelineError):
    """Write contention or lost connection. Safe to retry because stage writes are upserts."""

    error_type = "persistence_error"
    retryable = True


class FatalPipelineError(PipelineError):
    """Unrecoverable for this file; the file is moved to ``error``."""

    error_type = "fatal_error"


class AuditWriteError(FatalPipelineError):
    """Audit log write failed. Always propagated to the caller."""

    error_type = "audit_write_error"


class TenantScopeError(RuntimeError):
    """A query was attempted without a tenant id. This is a bug in the caller."""


def require_tenant(tenant_id):
    """Return *tenant_id* or raise :class:`TenantScopeError` when it is missing."""
    if tenant_id is None or (isinstance(tenant_id, str) and not tenant_id.strip()):
        raise TenantScopeError("tenant_id is required for every pipeline query")
    return tenant_id


def classify_stage_error(error: BaseException) -> tuple[str, bool]:
    """Map an exception to ``(error_type, retryable)``.

    * Classified :class:`PipelineError` subclasses carry their own answer.
    * SQLAlchemy connection / operational failures are persistence errors.
    * Bare timeouts are treated like provider timeouts.
    * Anything else is unexpected and not retried.
    """
    if isinstance(error, PipelineError):
        return error.error_type, error.retryable
    if isinstance(error, TenantScopeError):
        return "programming_error", False
    if isinstance(error, (OperationalError, InterfaceError)):
        return PersistenceError.error_type, True
    if isinstance(error, DBAPIError) and getattr(error, "connection_invalidated", False):
        return PersistenceError.error_type, True
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return TransientProviderError.error_type, True
    return "unexpected_error", False


def backoff_seconds(attempt: int, base: float, cap: float) -> float:
    """Exponential backoff for the *attempt*-th retry (1-based), capped at *cap*."""
    if attempt < 1:
        attempt = 1
    return min(cap, base * (2 ** (attempt - 1)))
