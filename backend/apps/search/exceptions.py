"""
Exception hierarchy for the semantic search app.

Mandatory-path failures (the candidate fetch) propagate to callers; the
optional paths (embeddings, vector store, backfill) catch these and degrade.
"""

from typing import Optional


class SearchError(Exception):
    """Base class for every error raised by this app."""


class ConfigurationError(SearchError):
    """Raised at construction time when required settings are missing."""


class DimensionMismatchError(SearchError, ValueError):
    """Raised when a vector does not have the configured dimension."""

    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual


class UpstreamError(SearchError):
    """Failure talking to an external HTTP service."""

    def __init__(self, message: str, service: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.service = service
        self.status_code = status_code


class UpstreamTimeoutError(UpstreamError):
    """The upstream call did not complete in time."""


class UpstreamCallError(UpstreamError):
    """Network failure or non-2xx status from an upstream service."""


class UpstreamResponseError(UpstreamError):
    """The upstream answered 2xx but the body had an unexpected shape."""


class StoreUnavailableError(SearchError):
    """The persistent vector store could not serve the call."""


class OperationCancelled(SearchError):
    """The caller cancelled the operation."""


class DeadlineExceeded(OperationCancelled):
    """The caller's deadline passed before the operation finished."""
