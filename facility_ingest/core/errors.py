"""Error taxonomy for the ingestion pipeline.

Record- and source-level errors are signals for logging and counting; they
are recovered where they occur. Only PersistenceUnavailableError is meant to
reach the caller of an ingestion run.
"""

from typing import Optional


class IngestionError(RuntimeError):
    """Base error for ingestion."""


class ValidationError(IngestionError):
    """Raised when a raw record cannot become a canonical record."""


class SourceUnavailableError(IngestionError):
    """Raised when a provider cannot be fetched, answered badly or exhausted its retries."""

    def __init__(self, message: str, *, source: Optional[str] = None) -> None:
        super().__init__(message)
        self.source = source


class FetchCancelledError(SourceUnavailableError):
    """Raised when the caller's cancellation signal interrupts a fetch."""


class PersistenceError(IngestionError):
    """Raised when a single inventory write fails."""


class PersistenceUnavailableError(PersistenceError):
    """Raised when the inventory store cannot be reached at all."""
