"""
Ingestion Controller for the TON account indexer.

This module enforces the iteration workflow. It is the single authority that
orchestrates the:
1. CursorStore (Progress)
2. SourceClient (Enumeration)
3. AddressFilter (Permission)
4. HierarchicalStore (Dedup + Persistence)
5. DetailClient (Execution, bounded concurrency)

The cursor is advanced only after every account of the page reached a
terminal outcome. Killing the process at any point therefore re-fetches at
most one page, and already written snapshots are skipped on the way.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from ingestion.core.address_filter import AddressFilter
from ingestion.core.cursor_store import CursorStore
from ingestion.core.detail_client import DetailClient
from ingestion.core.errors import DetailUnavailable, StorageError
from ingestion.core.source_client import SourceClient
from ingestion.core.storage import HierarchicalStore

logger = logging.getLogger(__name__)

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 10


class Outcome(str, Enum):
    SAVED = "saved"
    SKIPPED_EXISTING = "skipped_existing"
    SKIPPED_BY_FILTER = "skipped_by_filter"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ProcessingOutcome:
    identifier: str
    outcome: Outcome
    error: Optional[str] = None
    path: Optional[Path] = None


@dataclass
class BatchSummary:
    total: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[tuple[str, str]] = field(default_factory=list)

    @classmethod
    def from_outcomes(cls, outcomes: list[ProcessingOutcome]) -> "BatchSummary":
        summary = cls(total=len(outcomes))
        for o in outcomes:
            if o.outcome == Outcome.SAVED:
                summary.successful += 1
            elif o.outcome == Outcome.FAILED:
                summary.failed += 1
                summary.errors.append((o.identifier, o.error or "unknown error"))
            else:
                summary.skipped += 1
        return summary

    def as_dict(self) -> dict:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": [{"address": a, "error": e} for a, e in self.errors],
        }


@dataclass(frozen=True, slots=True)
class IterationResult:
    summary: BatchSummary
    has_next_page: bool
    next_cursor: Optional[str]
    outcomes: tuple[ProcessingOutcome, ...] = ()


@dataclass
class RunTotals:
    iterations: int = 0
    total: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0

    def add(self, summary: BatchSummary) -> None:
        self.iterations += 1
        self.total += summary.total
        self.successful += summary.successful
        self.failed += summary.failed
        self.skipped += summary.skipped


class IngestionController:
    """
    Orchestration layer for incremental ingestion.
    One instance per process; not safe to share between event loops.
    """

    def __init__(
        self,
        source: SourceClient,
        detail: DetailClient,
        store: HierarchicalStore,
        cursor_store: CursorStore,
        address_filter: AddressFilter,
        *,
        page_size: int = 100,
        max_concurrency: int = 4,
        iteration_delay_ms: int = 0,
        sleep: Optional[Callable] = None,
    ):
        if not MIN_CONCURRENCY <= max_concurrency <= MAX_CONCURRENCY:
            raise ValueError(f"max_concurrency must be between {MIN_CONCURRENCY} and {MAX_CONCURRENCY}")
        if page_size < 1:
            raise ValueError("page_size must be positive")

        self.source = source
        self.detail = detail
        self.store = store
        self.cursor_store = cursor_store
        self.address_filter = address_filter
        self.page_size = page_size
        self.max_concurrency = max_concurrency
        self.iteration_delay_ms = iteration_delay_ms
        self._sleep = sleep or asyncio.sleep

    async def check_connections(self) -> bool:
        logger.info("Testing API connections...")
        graphql_ok, rest_ok = await asyncio.gather(
            self.source.check_connection(),
            self.detail.check_connection(),
        )
        if graphql_ok and rest_ok:
            logger.info("All API connections successful")
            return True
        logger.error(f"Some API connections failed (graphql_ok={graphql_ok}, rest_ok={rest_ok})")
        return False

    async def run_iteration(self) -> IterationResult:
        """
        Execute one page.

        Flow:
        1. Read cursor
        2. Fetch page (SourceUnavailable aborts, cursor untouched)
        3. Filter
        4. Existence check + bounded detail fetch/save
        5. Wait for every task
        6. Persist next cursor (CursorIOError aborts)
        7. Summarize
        """
        cursor = self.cursor_store.load()
        page = await self.source.fetch_page(self.page_size, cursor)

        if not page.identifiers and not page.has_next_page:
            logger.info("No accounts to process")
            return IterationResult(summary=BatchSummary(), has_next_page=False, next_cursor=page.next_cursor)

        outcomes = await self.process_batch(page.identifiers)

        # Only after every account of the page is terminal
        if page.next_cursor:
            self.cursor_store.save(page.next_cursor)

        summary = BatchSummary.from_outcomes(outcomes)
        self.address_filter.log_stats()
        logger.info(
            f"Iteration completed: total={summary.total} saved={summary.successful} "
            f"skipped={summary.skipped} failed={summary.failed} "
            f"hasNextPage={page.has_next_page} endCursor={page.next_cursor}"
        )
        return IterationResult(
            summary=summary,
            has_next_page=page.has_next_page,
            next_cursor=page.next_cursor,
            outcomes=tuple(outcomes),
        )

    async def process_batch(self, identifiers: list[str]) -> list[ProcessingOutcome]:
        """Filter, dedupe against the store, then fetch+save the rest concurrently."""
        logger.info(f"Processing accounts batch of {len(identifiers)}")

        results: dict[str, ProcessingOutcome] = {}
        pending: list[str] = []
        for identifier in dict.fromkeys(identifiers):
            decision = self.address_filter.classify(identifier)
            if not decision.keep:
                logger.debug(f"Address {identifier} skipped by filter: {decision.reason}")
                results[identifier] = ProcessingOutcome(identifier, Outcome.SKIPPED_BY_FILTER, error=f"Filtered: {decision.reason}")
                continue
            try:
                exists = self.store.exists(identifier)
            except StorageError as e:
                logger.error(f"Failed to process account {identifier}: {e}")
                results[identifier] = ProcessingOutcome(identifier, Outcome.FAILED, error=str(e))
                continue
            if exists:
                logger.debug(f"Snapshot for {identifier} already exists, skipping")
                results[identifier] = ProcessingOutcome(identifier, Outcome.SKIPPED_EXISTING)
                continue
            pending.append(identifier)

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def bounded(identifier: str) -> ProcessingOutcome:
            async with semaphore:
                return await self.process_account(identifier)

        fetched = await asyncio.gather(*(bounded(i) for i in pending))
        for outcome in fetched:
            results[outcome.identifier] = outcome

        # Page order, one outcome per address
        return [results[i] for i in dict.fromkeys(identifiers)]

    async def process_account(self, identifier: str) -> ProcessingOutcome:
        try:
            snapshot = await self.detail.fetch_detail(identifier)
            path = self.store.write(identifier, snapshot)
            return ProcessingOutcome(identifier, Outcome.SAVED, path=path)
        except (DetailUnavailable, StorageError) as e:
            logger.error(f"Failed to process account {identifier}: {e}")
            return ProcessingOutcome(identifier, Outcome.FAILED, error=str(e))
        except Exception as e:  # noqa: BLE001
            logger.exception(f"Unexpected error processing account {identifier}")
            return ProcessingOutcome(identifier, Outcome.FAILED, error=f"{type(e).__name__}: {e}")

    async def run_complete(self, should_stop: Optional[Callable[[], bool]] = None) -> RunTotals:
        """Run iterations until the source is exhausted or a stop is requested."""
        should_stop = should_stop or (lambda: False)
        totals = RunTotals()
        logger.info("Starting complete indexer run")

        while not should_stop():
            result = await self.run_iteration()
            totals.add(result.summary)

            if not result.has_next_page or not result.next_cursor:
                break
            # Read-back: a cleared or unreadable-as-empty cursor means exhausted
            if not self.cursor_store.load():
                break
            if self.iteration_delay_ms > 0 and not should_stop():
                await self._sleep(self.iteration_delay_ms / 1000)

        logger.info(
            f"Complete indexer run finished: iterations={totals.iterations} total={totals.total} "
            f"saved={totals.successful} skipped={totals.skipped} failed={totals.failed}"
        )
        return totals
