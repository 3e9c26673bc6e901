from __future__ import annotations

import asyncio
import json
from pathlib import Path

import httpx

from app.core.config import IndexerSettings
from ingestion.core.cursor_store import CursorStore
from ingestion.jobs.analyze_storage import build_report
from ingestion.jobs.run_ingestion import GracefulShutdown, _parse_args, build_controller, run, run_infinite, run_timed

from conftest import GRAPHQL_URL, REST_URL, RecordingSleep, addr, page_body


def _settings(tmp_path: Path, **overrides) -> IndexerSettings:
    values = dict(
        api_key="test-key",
        graphql_url=GRAPHQL_URL,
        rest_url=REST_URL,
        cursor_file_path=tmp_path / "cursor.txt",
        data_directory=tmp_path / "data",
        directory_levels=2,
    )
    values.update(overrides)
    return IndexerSettings(**values)


def _handler(pages: dict, on_page=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            cursor = json.loads(request.content)["variables"]["after"]
            if on_page is not None:
                on_page(cursor)
            return httpx.Response(200, json=pages[cursor])
        return httpx.Response(200, json={"code": "te6cck", "path": request.url.path})

    return handler


def test_parse_args_defaults():
    args = _parse_args([])
    assert args.mode == "iteration"
    assert args.minutes == 10.0
    assert args.skip_check is False

    args = _parse_args(["timed", "3", "--skip-check"])
    assert (args.mode, args.minutes, args.skip_check) == ("timed", 3.0, True)


def test_wired_controller_runs_an_iteration_end_to_end(tmp_path: Path):
    pages = {None: page_body([addr(1), addr(2), "-2:" + "ab" * 32], True, "c1")}
    controller = build_controller(
        _settings(tmp_path), transport=httpx.MockTransport(_handler(pages)), sleep=RecordingSleep()
    )

    result = asyncio.run(controller.run_iteration())

    assert result.summary.successful == 2
    assert result.summary.skipped == 1
    assert CursorStore(tmp_path / "cursor.txt").load() == "c1"
    assert controller.store.exists(addr(1))
    assert controller.store.depth == 2


def test_mode_default_iteration_delay(tmp_path: Path):
    transport = httpx.MockTransport(_handler({}))
    assert build_controller(_settings(tmp_path), mode="complete", transport=transport).iteration_delay_ms == 100
    assert build_controller(_settings(tmp_path), mode="timed", transport=transport).iteration_delay_ms == 2000
    assert (
        build_controller(_settings(tmp_path, iteration_delay_ms=7), mode="timed", transport=transport).iteration_delay_ms
        == 7
    )


def test_shutdown_wait_returns_early_once_requested():
    async def scenario():
        shutdown = GracefulShutdown(grace_seconds=5)
        assert await shutdown.wait(0.01) is False
        shutdown.request("SIGTERM")
        assert shutdown.requested is True
        assert await shutdown.wait(60) is True

    asyncio.run(scenario())


def test_infinite_mode_stops_after_shutdown_request(tmp_path: Path):
    pages = {None: page_body([addr(1)], False, "c1")}

    async def scenario() -> int:
        shutdown = GracefulShutdown(grace_seconds=5)
        handler = _handler(pages, on_page=lambda cursor: shutdown.request("SIGINT"))
        settings = _settings(tmp_path, end_of_data_wait_ms=60_000)
        controller = build_controller(settings, mode="infinite", transport=httpx.MockTransport(handler))
        return await run_infinite(controller, settings, shutdown)

    assert asyncio.run(scenario()) == 0
    assert CursorStore(tmp_path / "cursor.txt").load() == "c1"


def test_timed_mode_stops_at_end_of_data(tmp_path: Path):
    pages = {
        None: page_body([addr(1)], True, "c1"),
        "c1": page_body([addr(2)], False, "c2"),
    }

    async def scenario() -> int:
        shutdown = GracefulShutdown(grace_seconds=5)
        settings = _settings(tmp_path, iteration_delay_ms=0)
        controller = build_controller(settings, mode="timed", transport=httpx.MockTransport(_handler(pages)))
        return await run_timed(controller, shutdown, minutes=5)

    assert asyncio.run(scenario()) == 0
    assert CursorStore(tmp_path / "cursor.txt").load() == "c2"


def test_storage_report(tmp_path: Path):
    controller = build_controller(_settings(tmp_path), transport=httpx.MockTransport(_handler({})))
    for n in range(5):
        controller.store.write(addr(n), {"n": n})

    report = build_report(tmp_path / "data", with_distribution=True)

    assert report["stats"]["total_files"] == 5
    assert report["current_depth"] == 2
    assert report["planned_depth"] == 2
    assert report["recommended_depth"] == 2
    assert report["skewed"] is False
    assert sum(report["stats"]["distribution"].values()) == 5


def _stalling_handler(pages: dict, on_detail):
    """GraphQL answers at once; every inspect call hangs long enough to be cancelled."""

    async def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            cursor = json.loads(request.content)["variables"]["after"]
            return httpx.Response(200, json=pages[cursor])
        on_detail()
        await asyncio.sleep(1)
        return httpx.Response(200, json={"code": "te6cck"})

    return handler


def _assert_page_abandoned(tmp_path: Path) -> None:
    assert not (tmp_path / "cursor.txt").exists()
    assert CursorStore(tmp_path / "cursor.txt").load() is None
    leftovers = [p for p in (tmp_path / "data").rglob("*") if p.is_file()]
    assert leftovers == []


def test_grace_period_expiry_cancels_current_page(tmp_path: Path):
    pages = {None: page_body([addr(1), addr(2), addr(3)], True, "c1")}
    settings = _settings(tmp_path, shutdown_grace_seconds=0.05)
    shutdown = GracefulShutdown(settings.shutdown_grace_seconds)

    def on_detail():
        if not shutdown.requested:
            shutdown.request("SIGTERM")

    controller = build_controller(settings, transport=httpx.MockTransport(_stalling_handler(pages, on_detail)))
    code = asyncio.run(run(settings, "iteration", skip_check=True, controller=controller, shutdown=shutdown))

    assert code == 0
    assert shutdown.requested is True
    assert shutdown.forced is True
    _assert_page_abandoned(tmp_path)


def test_second_signal_cancels_immediately(tmp_path: Path):
    pages = {None: page_body([addr(1), addr(2)], True, "c1")}
    settings = _settings(tmp_path, shutdown_grace_seconds=60)
    shutdown = GracefulShutdown(settings.shutdown_grace_seconds)
    signals = []

    def on_detail():
        if not signals:
            signals.append("SIGINT")
            shutdown.request("SIGINT")
            shutdown.request("SIGINT")

    controller = build_controller(settings, transport=httpx.MockTransport(_stalling_handler(pages, on_detail)))
    code = asyncio.run(run(settings, "iteration", skip_check=True, controller=controller, shutdown=shutdown))

    assert code == 0
    assert shutdown.forced is True
    _assert_page_abandoned(tmp_path)


def test_previous_cursor_survives_forced_shutdown(tmp_path: Path):
    CursorStore(tmp_path / "cursor.txt").save("c1")
    pages = {"c1": page_body([addr(4)], True, "c2")}
    settings = _settings(tmp_path, shutdown_grace_seconds=0.05)
    shutdown = GracefulShutdown(settings.shutdown_grace_seconds)

    controller = build_controller(
        settings, transport=httpx.MockTransport(_stalling_handler(pages, lambda: shutdown.request("SIGTERM")))
    )
    asyncio.run(run(settings, "iteration", skip_check=True, controller=controller, shutdown=shutdown))

    assert shutdown.forced is True
    assert CursorStore(tmp_path / "cursor.txt").load() == "c1"
    assert not controller.store.exists(addr(4))
