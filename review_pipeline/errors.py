"""
Exception taxonomy for the review ingestion pipeline.

Quota skips and duplicates are outcomes, not exceptions; see models.Outcome.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for pipeline errors."""


class SourceError(PipelineError):
    """The external review source could not serve a fetch."""

    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientSourceError(SourceError):
    """Network failure, rate limiting, timeout or a 5xx. Retry with backoff."""

    retryable = True


class PermanentSourceError(SourceError):
    """Place identifier unknown or rejected by the source. Never retried."""


class ValidationError(PipelineError):
    """A single incoming record is malformed."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class LedgerError(PipelineError):
    """Import ledger state violation."""


class BatchNotFoundError(LedgerError):
    pass


class BatchAlreadyCompletedError(LedgerError):
    """Processing was requested for a completed batch without force."""


class DirectoryNotLoadedError(PipelineError):
    """Business matching was attempted before the directory was available."""


class BusinessNotFoundError(PipelineError):
    pass
