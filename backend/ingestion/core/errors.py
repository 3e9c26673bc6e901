from __future__ import annotations

"""Controlled indexer errors.

Failure scope:
- Per-account errors (DetailUnavailable, StorageError) are recorded as Failed
  outcomes and never abort a page.
- Page-level errors (SourceUnavailable, CursorIOError) abort the iteration;
  the cursor is left untouched so the page is fetched again on restart.
- FilterConfigError is only ever logged; a bad pattern simply never matches.
"""

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from ingestion.core.backoff import ErrorClassification


class IndexerError(RuntimeError):
    """Base error for the indexer."""


class ConfigError(IndexerError):
    """Raised when configuration is missing or out of bounds."""


class FilterConfigError(IndexerError):
    """A custom skip pattern could not be compiled."""

    def __init__(self, pattern: str, reason: str):
        self.pattern = pattern
        self.reason = reason
        super().__init__(f"Invalid skip pattern {pattern!r}: {reason}")


class ClassifiedFailure(IndexerError):
    """A single failed upstream attempt, already classified for the backoff policy."""

    def __init__(self, message: str, classification: "ErrorClassification"):
        self.classification = classification
        super().__init__(message)


class UpstreamError(IndexerError):
    """Upstream call failed after the retry budget (or a non-retryable failure)."""

    def __init__(self, message: str, classification: "ErrorClassification", attempts: int):
        self.classification = classification
        self.attempts = attempts
        super().__init__(message)


class SourceUnavailable(UpstreamError):
    """Account page could not be fetched. Aborts the iteration."""

    def __init__(self, message: str, classification: "ErrorClassification", attempts: int, cursor: Optional[str] = None):
        self.cursor = cursor
        super().__init__(f"{message} (cursor={cursor!r})", classification, attempts)


class DetailUnavailable(UpstreamError):
    """Account inspection could not be fetched. Recorded as Failed for that account."""

    def __init__(self, message: str, classification: "ErrorClassification", attempts: int, identifier: str = ""):
        self.identifier = identifier
        super().__init__(f"{message} (address={identifier})", classification, attempts)


class StorageError(IndexerError):
    """Directory or file I/O failed while persisting a snapshot."""

    def __init__(self, message: str, identifier: str, path: Optional[str] = None):
        self.identifier = identifier
        self.path = path
        super().__init__(f"{message} (address={identifier}, path={path})")


class CursorIOError(IndexerError):
    """Cursor file could not be read or replaced. Fatal for the run."""

    def __init__(self, message: str, path: str, cursor: Optional[str] = None):
        self.path = path
        self.cursor = cursor
        super().__init__(f"{message} (path={path}, cursor={cursor!r})")
