#!/usr/bin/env python3
"""Common error types shared across modules.

Provides the pipeline's exception taxonomy in one place to avoid circular imports.
"""

from typing import Dict, Any, Optional


class ReportPipelineError(Exception):
    """Base class for pipeline errors."""

    status_code = 500


class ValidationError(ReportPipelineError):
    """Missing or invalid request fields."""

    status_code = 400


class NotFoundError(ReportPipelineError):
    """Unknown request, report or admin config id."""

    status_code = 404


class ConcurrencyConflictError(ReportPipelineError):
    """Optimistic concurrency retries were exhausted for a registry record."""

    status_code = 409


class EmptyResultError(ReportPipelineError):
    """Generation found nothing to analyze. Callers treat this as a soft failure."""


class TransientCollaboratorError(ReportPipelineError):
    """A single platform or AI call failed; the affected item is skipped."""


class AggregateGenerationFailure(ReportPipelineError):
    """Generation for a whole request failed.

    Attributes:
        request_id: The generation key that failed.
    """

    def __init__(self, request_id: str, message: str):
        super().__init__(f"{request_id}: {message}")
        self.request_id = request_id


class ContentFilterError(ReportPipelineError):
    """Raised when Azure OpenAI content filtering blocks a response.

    Attributes:
        details: Optional provider-specific payload for diagnostics.
    """

    def __init__(self, message: str = "Content filtered by Azure OpenAI", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


__all__ = [
    "ReportPipelineError",
    "ValidationError",
    "NotFoundError",
    "ConcurrencyConflictError",
    "EmptyResultError",
    "TransientCollaboratorError",
    "AggregateGenerationFailure",
    "ContentFilterError",
]
