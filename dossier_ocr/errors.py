"""Custom exception hierarchy for the dossier OCR extraction service.

Every pipeline stage raises one of these so the top-level handler can decide
between a recorded partial failure and a fatal terminal ``error`` event, and so
logs carry a stable ``error_type``.
"""
from __future__ import annotations


class PipelineError(Exception):
    """Base class for all pipeline failures."""

    fatal: bool = True


class ConfigurationError(PipelineError):
    """Raised when credentials, bucket names or permissions are missing."""


class ObjectStoreWriteError(ConfigurationError):
    """Raised when an object could not be written via the direct or signed-URL path."""

    def __init__(self, message: str = "", *, may_exist: bool = False) -> None:
        super().__init__(message)
        # Set when an abandoned direct upload could still complete.
        self.may_exist = may_exist


class BoundaryError(PipelineError):
    """Raised for empty sources, zero-page documents and other input boundaries."""


class TransientUpstreamError(PipelineError):
    """Raised when an upstream service times out, drops the connection or returns 5xx."""


class SourceFetchError(TransientUpstreamError):
    """Raised when the source document could not be downloaded."""


class OCRServiceError(TransientUpstreamError):
    """Raised when the OCR batch job fails or its output cannot be read."""


class LLMCallError(TransientUpstreamError):
    """Raised when a language-model call fails or returns unusable content."""


class ExtractionError(PipelineError):
    """Raised when a single cluster cannot be turned into an extraction record."""

    fatal = False


class ConsolidationError(PipelineError):
    """Raised once every consolidation attempt has failed."""


class ValidationStageError(PipelineError):
    """Raised by the coverage review; always swallowed by the pipeline."""

    fatal = False


class CleanupError(PipelineError):
    """Raised when a cleanup target could not be deleted; only ever logged."""

    fatal = False


__all__ = [
    "PipelineError",
    "ConfigurationError",
    "ObjectStoreWriteError",
    "BoundaryError",
    "TransientUpstreamError",
    "SourceFetchError",
    "OCRServiceError",
    "LLMCallError",
    "ExtractionError",
    "ConsolidationError",
    "ValidationStageError",
    "CleanupError",
]
