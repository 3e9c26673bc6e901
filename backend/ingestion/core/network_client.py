"""
Shared retry loop for tonapi.io calls.

Both upstream clients (account pages over GraphQL, account inspection over
REST) run through RetryingClient.call_with_retry, which:

1. Executes one attempt.
2. Classifies a failure (network -> TRANSIENT, 429 -> RATE_LIMITED,
   other non-2xx -> TRANSIENT, malformed 2xx -> UNCLASSIFIED).
3. Asks the shared BackoffPolicy whether and how long to wait.
4. Sleeps, or raises the client's "unavailable" error.

Total attempts = max_retries + 1.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from ingestion.core.backoff import BackoffPolicy, ErrorClassification, ErrorKind, parse_retry_after
from ingestion.core.errors import ClassifiedFailure, UpstreamError

logger = logging.getLogger(__name__)

T = TypeVar("T")
Sleeper = Callable[[float], Awaitable[Any]]

DEFAULT_TIMEOUT_SECONDS = 30.0


def build_http_client(
    credential: str,
    *,
    base_url: str = "",
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """AsyncClient carrying the bearer credential. `transport` is for tests."""
    headers = {
        "Authorization": f"Bearer {credential}",
        "Content-Type": "application/json",
        "Accept": "application/json",
    }
    return httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout, transport=transport)


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.reason_phrase or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        return str(data.get("error") or data.get("message") or f"HTTP {response.status_code}")
    return f"HTTP {response.status_code}"


def raise_for_classified_status(response: httpx.Response) -> None:
    """Raise ClassifiedFailure for any non-2xx response."""
    if response.is_success:
        return

    status = response.status_code
    if status == 429:
        retry_after = parse_retry_after(response.headers.get("Retry-After"))
        raise ClassifiedFailure(
            f"Rate limit exceeded (429): {_error_message(response)}",
            ErrorClassification.rate_limited(retry_after, status_code=status),
        )

    raise ClassifiedFailure(
        f"API error ({status}): {_error_message(response)}",
        ErrorClassification.transient(status),
    )


def decode_json(response: httpx.Response) -> Any:
    """Decode a 2xx body; an undecodable body is UNCLASSIFIED (never retried)."""
    try:
        return response.json()
    except ValueError as e:
        raise ClassifiedFailure(
            f"Malformed response body: {e}",
            ErrorClassification(ErrorKind.UNCLASSIFIED, status_code=response.status_code),
        ) from e


class RetryingClient:
    """
    Base for upstream clients.

    Subclasses provide one underlying call and `_unavailable` to build their
    final error; the retry behaviour itself is identical for every subclass.
    """

    name = "upstream"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        policy: BackoffPolicy,
        sleep: Optional[Sleeper] = None,
    ):
        """
        Args:
            http_client: Configured AsyncClient (auth headers, base URL, timeout).
            policy: Backoff policy shared with the other client.
            sleep: Awaitable sleeper taking seconds. Defaults to asyncio.sleep.
        """
        self._client = http_client
        self._policy = policy
        self._sleep: Sleeper = sleep or asyncio.sleep

    @property
    def policy(self) -> BackoffPolicy:
        return self._policy

    async def call_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        describe: str,
        context: Optional[str] = None,
    ) -> T:
        attempt = 0
        while True:
            attempt += 1
            logger.debug(f"{self.name}: {describe} (attempt {attempt}/{self._policy.max_attempts})")
            try:
                return await operation()
            except ClassifiedFailure as e:
                classification = e.classification
                message = str(e)
            except httpx.TransportError as e:
                classification = ErrorClassification.transient()
                message = f"Network error: {type(e).__name__}: {e}"

            decision = self._policy.decide(classification, attempt)
            if not decision.retry:
                logger.error(
                    f"{self.name}: {describe} failed after {attempt} attempt(s) "
                    f"[{classification.kind.value}]: {message}"
                )
                raise self._unavailable(message, classification, attempt, context)

            if classification.kind == ErrorKind.RATE_LIMITED:
                logger.warning(
                    f"{self.name}: rate limit hit on {describe} "
                    f"(retry_after={classification.retry_after_seconds}), waiting {decision.delay_ms}ms"
                )
            else:
                logger.warning(
                    f"{self.name}: retrying {describe} in {decision.delay_ms}ms "
                    f"(attempt {attempt}/{self._policy.max_attempts}): {message}"
                )
            await self._sleep(decision.delay_ms / 1000)

    def _unavailable(
        self,
        message: str,
        classification: ErrorClassification,
        attempts: int,
        context: Optional[str],
    ) -> UpstreamError:
        return UpstreamError(message, classification, attempts)

    async def aclose(self) -> None:
        """Cleanup resources."""
        await self._client.aclose()
