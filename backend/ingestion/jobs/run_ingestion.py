from __future__ import annotations

"""Indexer entry point: read cursor -> fetch page -> filter -> inspect -> save -> advance cursor.

STRICT:
- One artifact per account, written once (existing files are skipped).
- The cursor only moves after a page is fully processed.
- Failure isolated per account; a failed account never aborts its page.

Modes:
  iteration (default)  one page
  complete             pages until the source is exhausted
  infinite | daemon    forever; waits for new accounts at the end of data
  timed N              like infinite, for N minutes (default 10)

Run:
  python ingestion/jobs/run_ingestion.py [mode] [minutes] [--skip-check]
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

# Ensure `backend/` is on sys.path so `import app...` works when run from repo root.
BASE_DIR = Path(__file__).resolve().parents[2]
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

import httpx  # noqa: E402

from app.core.config import IndexerSettings, load_settings  # noqa: E402
from ingestion.core.address_filter import AddressFilter, FilterStats, load_filter_config  # noqa: E402
from ingestion.core.cursor_store import CursorStore  # noqa: E402
from ingestion.core.detail_client import DetailClient  # noqa: E402
from ingestion.core.errors import ConfigError, CursorIOError, IndexerError  # noqa: E402
from ingestion.core.ingestion_controller import IngestionController, RunTotals  # noqa: E402
from ingestion.core.network_client import Sleeper, build_http_client  # noqa: E402
from ingestion.core.source_client import SourceClient  # noqa: E402
from ingestion.core.storage import HierarchicalStore, resolve_depth  # noqa: E402


logger = logging.getLogger("indexer.ingestion")

MODES = ("iteration", "complete", "infinite", "daemon", "timed")
DEFAULT_ITERATION_DELAY_MS = {"complete": 100, "infinite": 5000, "daemon": 5000, "timed": 2000, "iteration": 0}
TIMED_MIN_REMAINING_SECONDS = 30.0
TIMED_MAX_ERROR_WAIT_SECONDS = 10.0


def _log(event: dict) -> None:
    # Structured one-line events; never log the API key.
    logger.info(json.dumps(event, ensure_ascii=False, default=str))


def build_controller(
    settings: IndexerSettings,
    *,
    mode: str = "iteration",
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sleep: Optional[Sleeper] = None,
) -> IngestionController:
    """Wire every component from validated settings. Depth is resolved here, once per run."""
    policy = settings.backoff_policy()

    graphql_http = build_http_client(
        settings.api_key, timeout=settings.request_timeout_seconds, transport=transport
    )
    rest_http = build_http_client(
        settings.api_key, base_url=settings.rest_url, timeout=settings.request_timeout_seconds, transport=transport
    )
    source = SourceClient(graphql_http, policy, settings.graphql_url, sleep=sleep)
    detail = DetailClient(rest_http, policy, sleep=sleep, probe_address=settings.probe_address)

    depth = resolve_depth(
        settings.data_directory,
        override=settings.directory_levels,
        expected_file_count=settings.expected_file_count,
    )
    store = HierarchicalStore(settings.data_directory, depth)
    store.ensure_root()

    filter_config = load_filter_config(settings.address_filter_yaml, settings.custom_skip_patterns)
    address_filter = AddressFilter(filter_config, FilterStats())

    iteration_delay = settings.iteration_delay_ms
    if iteration_delay is None:
        iteration_delay = DEFAULT_ITERATION_DELAY_MS.get(mode, 0)

    return IngestionController(
        source,
        detail,
        store,
        CursorStore(settings.cursor_file_path),
        address_filter,
        page_size=settings.accounts_per_page,
        max_concurrency=settings.max_concurrent_requests,
        iteration_delay_ms=iteration_delay,
        sleep=sleep,
    )


class GracefulShutdown:
    """
    First SIGINT/SIGTERM: stop starting iterations, let the current page finish.
    After `grace_seconds`, or on a second signal: cancel the running task.
    Cancellation leaves the cursor un-advanced; snapshots are written atomically.
    """

    def __init__(self, grace_seconds: float):
        self.grace_seconds = grace_seconds
        self.requested = False
        self.forced = False
        self.event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._installed: list[int] = []

    def install(self, task: asyncio.Task) -> None:
        self._task = task
        self._loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                self._loop.add_signal_handler(sig, self.request, sig.name)
                self._installed.append(sig)
            except (NotImplementedError, RuntimeError):
                logger.warning(f"Signal handler for {sig.name} not supported on this platform")

    def uninstall(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        if self._loop is not None:
            for sig in self._installed:
                self._loop.remove_signal_handler(sig)
        self._installed = []

    def request(self, signame: str = "manual") -> None:
        if self.requested:
            logger.warning("Force shutdown requested")
            self._force()
            return
        self.requested = True
        self.event.set()
        _log({"event": "shutdown_requested", "signal": signame, "grace_seconds": self.grace_seconds})
        if self._loop is not None:
            self._timer = self._loop.call_later(self.grace_seconds, self._force)

    def _force(self) -> None:
        self.forced = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; returns True if shutdown was requested meanwhile."""
        if seconds <= 0:
            return self.requested
        try:
            await asyncio.wait_for(self.event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True


@dataclass
class _Counters:
    iterations: int = 0
    started: float = 0.0


def _iteration_event(n: int, result: Any, started: float, iteration_started: float, **extra: Any) -> dict:
    event = {
        "event": "iteration_summary",
        "iteration": n,
        "summary": result.summary.as_dict(),
        "has_next_page": result.has_next_page,
        "end_cursor": result.next_cursor,
        "iteration_duration_ms": int((time.monotonic() - iteration_started) * 1000),
        "total_runtime_ms": int((time.monotonic() - started) * 1000),
    }
    event.update(extra)
    return event


async def run_infinite(controller: IngestionController, settings: IndexerSettings, shutdown: GracefulShutdown) -> int:
    counters = _Counters(started=time.monotonic())
    _log({"event": "infinite_mode_started"})

    while not shutdown.requested:
        counters.iterations += 1
        iteration_started = time.monotonic()
        try:
            result = await controller.run_iteration()
        except CursorIOError:
            raise
        except IndexerError as e:
            logger.error(f"Iteration #{counters.iterations} failed: {e}")
            if await shutdown.wait(settings.error_retry_delay_ms / 1000):
                break
            continue

        _log(_iteration_event(counters.iterations, result, counters.started, iteration_started))

        if not result.has_next_page:
            logger.info("Reached end of all accounts - waiting for new accounts")
            wait_ms = settings.end_of_data_wait_ms
        else:
            wait_ms = controller.iteration_delay_ms
        if await shutdown.wait(wait_ms / 1000):
            break

    _log({
        "event": "infinite_mode_stopped",
        "total_iterations": counters.iterations,
        "total_runtime_ms": int((time.monotonic() - counters.started) * 1000),
    })
    return 0


async def run_timed(
    controller: IngestionController,
    shutdown: GracefulShutdown,
    minutes: float,
) -> int:
    counters = _Counters(started=time.monotonic())
    end = counters.started + minutes * 60
    _log({"event": "timed_mode_started", "duration_minutes": minutes})

    while not shutdown.requested and time.monotonic() < end:
        remaining = end - time.monotonic()
        if remaining < TIMED_MIN_REMAINING_SECONDS:
            logger.info("Less than 30 seconds remaining, stopping to ensure clean exit")
            break

        counters.iterations += 1
        iteration_started = time.monotonic()
        try:
            result = await controller.run_iteration()
        except CursorIOError:
            raise
        except IndexerError as e:
            logger.error(f"Iteration #{counters.iterations} failed: {e}")
            wait = min(TIMED_MAX_ERROR_WAIT_SECONDS, max(0.0, end - time.monotonic() - 5))
            if await shutdown.wait(wait):
                break
            continue

        _log(_iteration_event(
            counters.iterations, result, counters.started, iteration_started,
            remaining_minutes=round((end - time.monotonic()) / 60),
        ))

        if not result.has_next_page:
            logger.info("Reached end of all accounts, stopping early")
            break

        delay = controller.iteration_delay_ms / 1000
        if delay > 0 and time.monotonic() + delay < end:
            if await shutdown.wait(delay):
                break

    _log({
        "event": "timed_mode_completed",
        "total_iterations": counters.iterations,
        "requested_duration_minutes": minutes,
        "total_runtime_ms": int((time.monotonic() - counters.started) * 1000),
    })
    return 0


async def run(
    settings: IndexerSettings,
    mode: str,
    minutes: float = 10,
    skip_check: bool = False,
    *,
    controller: Optional[IngestionController] = None,
    shutdown: Optional[GracefulShutdown] = None,
) -> int:
    controller = controller or build_controller(settings, mode=mode)
    shutdown = shutdown or GracefulShutdown(settings.shutdown_grace_seconds)
    current = asyncio.current_task()
    if current is not None:
        shutdown.install(current)

    try:
        if not skip_check and not await controller.check_connections():
            logger.error("Failed to connect to APIs. Check TONAPI_KEY and network connectivity.")
            return 1

        if mode == "iteration":
            started = time.monotonic()
            result = await controller.run_iteration()
            _log(_iteration_event(1, result, started, started))
        elif mode == "complete":
            totals: RunTotals = await controller.run_complete(should_stop=lambda: shutdown.requested)
            _log({"event": "complete_run_summary", **totals.__dict__})
        elif mode in ("infinite", "daemon"):
            return await run_infinite(controller, settings, shutdown)
        else:
            return await run_timed(controller, shutdown, minutes)
        return 0
    except asyncio.CancelledError:
        if shutdown.forced:
            _log({"event": "shutdown_forced", "note": "current page abandoned, cursor not advanced"})
            return 0
        raise
    finally:
        shutdown.uninstall()
        _log({"event": "filter_stats", **controller.address_filter.stats.snapshot()})
        await controller.source.aclose()
        await controller.detail.aclose()


def _parse_args(argv: Optional[list[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Incremental TON account indexer")
    parser.add_argument("mode", nargs="?", default="iteration", choices=MODES, help="Run mode (default: iteration)")
    parser.add_argument("minutes", nargs="?", type=float, default=10.0, help="Duration for timed mode (default: 10)")
    parser.add_argument("--skip-check", action="store_true", help="Skip the startup API connection test")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = _parse_args(argv)

    # Ensure logs are visible when run from cron / console.
    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    try:
        settings = load_settings()
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    logging.getLogger().setLevel(settings.log_level)
    _log({"event": "indexer_starting", "mode": args.mode, "config": settings.safe_summary()})

    try:
        code = asyncio.run(run(settings, args.mode, minutes=args.minutes, skip_check=args.skip_check))
    except (IndexerError, ValueError) as e:
        _log({"event": "indexer_failed", "error": str(e), "error_type": type(e).__name__})
        return 1

    _log({"event": "indexer_finished", "mode": args.mode, "exit_code": code})
    return code


def cli() -> None:
    raise SystemExit(main())


if __name__ == "__main__":
    cli()
