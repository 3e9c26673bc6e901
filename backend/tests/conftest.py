from __future__ import annotations

import hashlib
import sys
from pathlib import Path
from typing import Any, Callable, Optional

import httpx
import pytest


ROOT = Path(__file__).resolve().parents[2]

# Ensure `backend/app` is importable as top-level `app` for tests.
BACKEND_DIR = ROOT / "backend"
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from ingestion.core.backoff import BackoffPolicy  # noqa: E402
from ingestion.core.network_client import build_http_client  # noqa: E402


GRAPHQL_URL = "https://graphql.test/graphql"
REST_URL = "https://rest.test/v2"


class RecordingSleep:
    """Stands in for asyncio.sleep; records requested delays in seconds."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def page_body(addresses: list[str], has_next: bool, end_cursor: Optional[str]) -> dict[str, Any]:
    return {
        "data": {
            "allAccounts": {
                "pageInfo": {"hasNextPage": has_next, "endCursor": end_cursor},
                "nodes": [{"rawAddress": a} for a in addresses],
            }
        }
    }


def mock_client(handler: Callable[[httpx.Request], httpx.Response], base_url: str = "") -> httpx.AsyncClient:
    return build_http_client("test-key", base_url=base_url, transport=httpx.MockTransport(handler))


def addr(n: int, workchain: str = "0") -> str:
    """Deterministic, filter-passing raw address."""
    return f"{workchain}:{hashlib.sha256(str(n).encode()).hexdigest()}"


@pytest.fixture()
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def policy() -> BackoffPolicy:
    return BackoffPolicy(max_retries=3, base_delay_ms=1000, max_delay_ms=60_000)
