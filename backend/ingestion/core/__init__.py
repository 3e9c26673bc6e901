"""Indexer core primitives.

- Enumerate accounts page by page (cursor persisted after each full page)
- Drop addresses that cannot be inspected, before any network call
- Store one inspection snapshot per account in an md5-sharded tree
"""

from ingestion.core.address_filter import AddressFilter, AddressFilterConfig, FilterDecision, FilterStats
from ingestion.core.backoff import BackoffPolicy, ErrorClassification, ErrorKind
from ingestion.core.cursor_store import CursorStore
from ingestion.core.detail_client import DetailClient
from ingestion.core.ingestion_controller import BatchSummary, IngestionController, IterationResult, Outcome
from ingestion.core.source_client import Page, SourceClient
from ingestion.core.storage import HierarchicalStore, resolve_depth

__all__ = [
    "AddressFilter",
    "AddressFilterConfig",
    "FilterDecision",
    "FilterStats",
    "BackoffPolicy",
    "ErrorClassification",
    "ErrorKind",
    "CursorStore",
    "DetailClient",
    "BatchSummary",
    "IngestionController",
    "IterationResult",
    "Outcome",
    "Page",
    "SourceClient",
    "HierarchicalStore",
    "resolve_depth",
]
