from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import pytest

from ingestion.core.address_filter import AddressFilter, SkipReason
from ingestion.core.backoff import ErrorClassification
from ingestion.core.cursor_store import CursorStore
from ingestion.core.errors import CursorIOError, DetailUnavailable, SourceUnavailable, StorageError
from ingestion.core.ingestion_controller import IngestionController, Outcome
from ingestion.core.source_client import Page
from ingestion.core.storage import HierarchicalStore

from conftest import RecordingSleep, addr


class FakeSource:
    """Serves pages keyed by the cursor they are requested with."""

    def __init__(self, pages: dict[Optional[str], Page], fail: bool = False):
        self.pages = pages
        self.fail = fail
        self.requests: list[Optional[str]] = []

    async def fetch_page(self, page_size: int, cursor: Optional[str] = None) -> Page:
        self.requests.append(cursor)
        if self.fail:
            raise SourceUnavailable("down", ErrorClassification.transient(503), 4, cursor=cursor)
        return self.pages[cursor]

    async def check_connection(self) -> bool:
        return not self.fail


class FakeDetail:
    def __init__(self, failing: tuple[str, ...] = (), delay: float = 0.0):
        self.failing = set(failing)
        self.delay = delay
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch_detail(self, identifier: str) -> dict:
        self.calls.append(identifier)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if identifier in self.failing:
                raise DetailUnavailable("gone", ErrorClassification.transient(500), 4, identifier=identifier)
            return {"address": identifier, "code": "te6cck"}
        finally:
            self.in_flight -= 1

    async def check_connection(self) -> bool:
        return True


class FailingCursorStore(CursorStore):
    def save(self, cursor: str) -> None:
        raise CursorIOError("disk full", str(self.path), cursor)


def _controller(tmp_path: Path, source, detail, *, cursor_store=None, **kwargs) -> IngestionController:
    return IngestionController(
        source,
        detail,
        HierarchicalStore(tmp_path / "data", 2),
        cursor_store or CursorStore(tmp_path / "cursor.txt"),
        AddressFilter(),
        **kwargs,
    )


A1, A2, A3 = addr(1), addr(2), addr(3)
RESERVED = "-2:" + "ab" * 32
ZERO_HEAVY = "0:" + "0" * 50 + "123456789abcde"


def _two_pages() -> dict[Optional[str], Page]:
    return {
        None: Page([A1, A2], True, "c1"),
        "c1": Page([A3], False, "c2"),
    }


def test_iteration_saves_and_advances_cursor(tmp_path: Path):
    detail = FakeDetail()
    controller = _controller(tmp_path, FakeSource(_two_pages()), detail)

    result = asyncio.run(controller.run_iteration())

    assert result.summary.total == 2
    assert result.summary.successful == 2
    assert result.has_next_page is True
    assert result.next_cursor == "c1"
    assert CursorStore(tmp_path / "cursor.txt").load() == "c1"
    assert controller.store.exists(A1) and controller.store.exists(A2)
    assert [o.outcome for o in result.outcomes] == [Outcome.SAVED, Outcome.SAVED]


def test_restart_after_crash_before_cursor_save_skips_saved_accounts(tmp_path: Path):
    source = FakeSource(_two_pages())
    detail = FakeDetail()
    crashing = _controller(tmp_path, source, detail, cursor_store=FailingCursorStore(tmp_path / "cursor.txt"))

    with pytest.raises(CursorIOError):
        asyncio.run(crashing.run_iteration())
    assert CursorStore(tmp_path / "cursor.txt").load() is None

    # restart: same page again, nothing re-fetched
    detail_after = FakeDetail()
    restarted = _controller(tmp_path, source, detail_after)
    result = asyncio.run(restarted.run_iteration())

    assert source.requests == [None, None]
    assert detail_after.calls == []
    assert result.summary.skipped == 2
    assert {o.outcome for o in result.outcomes} == {Outcome.SKIPPED_EXISTING}
    assert CursorStore(tmp_path / "cursor.txt").load() == "c1"


def test_resume_from_persisted_cursor(tmp_path: Path):
    CursorStore(tmp_path / "cursor.txt").save("c1")
    source = FakeSource(_two_pages())
    detail = FakeDetail()

    result = asyncio.run(_controller(tmp_path, source, detail).run_iteration())

    assert source.requests == ["c1"]
    assert detail.calls == [A3]
    assert result.has_next_page is False
    assert CursorStore(tmp_path / "cursor.txt").load() == "c2"


def test_filtered_address_never_reaches_detail(tmp_path: Path):
    source = FakeSource({None: Page([RESERVED, A1, ZERO_HEAVY], False, "c1")})
    detail = FakeDetail()
    controller = _controller(tmp_path, source, detail)

    result = asyncio.run(controller.run_iteration())

    assert detail.calls == [A1]
    assert result.outcomes[0].outcome == Outcome.SKIPPED_BY_FILTER
    assert SkipReason.RESERVED_SHARD in (result.outcomes[0].error or "")
    assert result.outcomes[2].outcome == Outcome.SKIPPED_BY_FILTER
    assert result.summary.skipped == 2
    assert result.summary.successful == 1
    assert controller.address_filter.stats.skipped_by_reason == {
        SkipReason.RESERVED_SHARD: 1,
        SkipReason.ZERO_HEAVY: 1,
    }


def test_concurrency_is_bounded(tmp_path: Path):
    identifiers = [addr(n) for n in range(10)]
    detail = FakeDetail(delay=0.01)
    controller = _controller(
        tmp_path, FakeSource({None: Page(identifiers, False, "c1")}), detail, max_concurrency=3
    )

    result = asyncio.run(controller.run_iteration())

    assert result.summary.successful == 10
    assert detail.max_in_flight <= 3
    assert detail.max_in_flight > 1
    # outcomes stay in page order
    assert [o.identifier for o in result.outcomes] == identifiers


def test_failed_account_does_not_abort_page(tmp_path: Path):
    detail = FakeDetail(failing=(A2,))
    controller = _controller(tmp_path, FakeSource({None: Page([A1, A2, A3], True, "c1")}), detail)

    result = asyncio.run(controller.run_iteration())

    assert result.summary.successful == 2
    assert result.summary.failed == 1
    assert result.summary.errors[0][0] == A2
    assert result.summary.as_dict()["errors"][0]["address"] == A2
    assert not controller.store.exists(A2)
    # the page is complete, so the cursor moves even with a failure
    assert CursorStore(tmp_path / "cursor.txt").load() == "c1"


def test_unexpected_error_is_recorded_as_failure(tmp_path: Path):
    class ExplodingDetail(FakeDetail):
        async def fetch_detail(self, identifier: str) -> dict:
            raise KeyError("surprise")

    controller = _controller(tmp_path, FakeSource({None: Page([A1], False, "c1")}), ExplodingDetail())
    result = asyncio.run(controller.run_iteration())

    assert result.summary.failed == 1
    assert "KeyError" in result.summary.errors[0][1]


def test_source_failure_aborts_without_moving_cursor(tmp_path: Path):
    CursorStore(tmp_path / "cursor.txt").save("c1")
    detail = FakeDetail()
    controller = _controller(tmp_path, FakeSource({}, fail=True), detail)

    with pytest.raises(SourceUnavailable):
        asyncio.run(controller.run_iteration())

    assert detail.calls == []
    assert CursorStore(tmp_path / "cursor.txt").load() == "c1"


def test_empty_final_page(tmp_path: Path):
    CursorStore(tmp_path / "cursor.txt").save("c9")
    controller = _controller(tmp_path, FakeSource({"c9": Page([], False, None)}), FakeDetail())

    result = asyncio.run(controller.run_iteration())

    assert result.summary.total == 0
    assert result.has_next_page is False
    assert CursorStore(tmp_path / "cursor.txt").load() == "c9"


def test_duplicate_addresses_in_page_are_processed_once(tmp_path: Path):
    detail = FakeDetail()
    controller = _controller(tmp_path, FakeSource({None: Page([A1, A1, A2], False, "c1")}), detail)

    result = asyncio.run(controller.run_iteration())

    assert sorted(detail.calls) == sorted([A1, A2])
    assert result.summary.total == 2


def test_run_complete_walks_every_page(tmp_path: Path):
    sleeper = RecordingSleep()
    source = FakeSource(_two_pages())
    detail = FakeDetail()
    controller = _controller(tmp_path, source, detail, iteration_delay_ms=100, sleep=sleeper)

    totals = asyncio.run(controller.run_complete())

    assert totals.iterations == 2
    assert totals.successful == 3
    assert source.requests == [None, "c1"]
    assert sleeper.calls == [0.1]
    assert CursorStore(tmp_path / "cursor.txt").load() == "c2"


def test_run_complete_honours_stop_request(tmp_path: Path):
    source = FakeSource(_two_pages())
    controller = _controller(tmp_path, source, FakeDetail())

    totals = asyncio.run(controller.run_complete(should_stop=lambda: len(source.requests) >= 1))

    assert totals.iterations == 1
    assert source.requests == [None]


def test_controller_rejects_bad_concurrency(tmp_path: Path):
    with pytest.raises(ValueError):
        _controller(tmp_path, FakeSource({}), FakeDetail(), max_concurrency=0)
    with pytest.raises(ValueError):
        _controller(tmp_path, FakeSource({}), FakeDetail(), max_concurrency=11)


def test_check_connections(tmp_path: Path):
    assert asyncio.run(_controller(tmp_path, FakeSource({}), FakeDetail()).check_connections()) is True
    assert asyncio.run(_controller(tmp_path, FakeSource({}, fail=True), FakeDetail()).check_connections()) is False


def test_unreadable_leaf_fails_only_that_account(tmp_path: Path):
    class DeniedStore(HierarchicalStore):
        def exists(self, identifier: str) -> bool:
            if identifier == A2:
                raise StorageError("Failed to check snapshot: permission denied", identifier)
            return super().exists(identifier)

    detail = FakeDetail()
    controller = IngestionController(
        FakeSource({None: Page([A1, A2, A3], True, "c1")}),
        detail,
        DeniedStore(tmp_path / "data", 2),
        CursorStore(tmp_path / "cursor.txt"),
        AddressFilter(),
    )

    result = asyncio.run(controller.run_iteration())

    assert [o.outcome for o in result.outcomes] == [Outcome.SAVED, Outcome.FAILED, Outcome.SAVED]
    assert A2 not in detail.calls
    assert result.summary.failed == 1
    assert "permission denied" in result.summary.errors[0][1]
    assert CursorStore(tmp_path / "cursor.txt").load() == "c1"
