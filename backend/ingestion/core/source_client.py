"""Account page client (tonapi.io GraphQL `allAccounts`)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from ingestion.core.backoff import BackoffPolicy, ErrorClassification
from ingestion.core.errors import ClassifiedFailure, SourceUnavailable
from ingestion.core.network_client import RetryingClient, Sleeper, decode_json, raise_for_classified_status

logger = logging.getLogger(__name__)

ALL_ACCOUNTS_QUERY = """
query($first: Int!, $after: Cursor) {
  allAccounts(first: $first, after: $after) {
    pageInfo {
      hasNextPage
      endCursor
    }
    nodes {
      rawAddress
    }
  }
}
"""

_RATE_LIMIT_MARKERS = ("rate limit", "rate-limit", "ratelimit", "too many requests")


@dataclass(frozen=True, slots=True)
class Page:
    identifiers: list[str]
    has_next_page: bool
    next_cursor: Optional[str]


def _graphql_error_classification(errors: list[Any]) -> ErrorClassification:
    """GraphQL reports rate limits inside `errors` with a 200 status."""
    for err in errors:
        if not isinstance(err, dict):
            continue
        extensions = err.get("extensions") or {}
        code = str(extensions.get("code", "")) if isinstance(extensions, dict) else ""
        text = f"{err.get('message', '')} {code}".lower()
        if any(marker in text for marker in _RATE_LIMIT_MARKERS) or code.upper() in ("RATE_LIMITED", "TOO_MANY_REQUESTS"):
            retry_after = extensions.get("retryAfter") if isinstance(extensions, dict) else None
            seconds = float(retry_after) if isinstance(retry_after, (int, float)) and retry_after >= 0 else None
            return ErrorClassification.rate_limited(seconds, status_code=None)
    return ErrorClassification.transient()


def parse_page(body: Any) -> Page:
    """Turn a GraphQL body into a Page. Structural problems are UNCLASSIFIED."""
    if not isinstance(body, dict):
        raise ClassifiedFailure("GraphQL response is not an object", ErrorClassification.unclassified())

    errors = body.get("errors")
    if errors:
        messages = "; ".join(str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors)
        raise ClassifiedFailure(f"GraphQL error: {messages}", _graphql_error_classification(errors))

    try:
        connection = body["data"]["allAccounts"]
        page_info = connection["pageInfo"]
        nodes = connection["nodes"]
        identifiers = [node["rawAddress"] for node in nodes]
        has_next = bool(page_info["hasNextPage"])
        end_cursor = page_info.get("endCursor")
    except (KeyError, TypeError) as e:
        raise ClassifiedFailure(f"Malformed allAccounts response: missing {e}", ErrorClassification.unclassified()) from e

    for i, identifier in enumerate(identifiers):
        if not isinstance(identifier, str) or not identifier:
            raise ClassifiedFailure(
                f"Malformed allAccounts response: node {i} has rawAddress {identifier!r}",
                ErrorClassification.unclassified(),
            )

    return Page(
        identifiers=identifiers,
        has_next_page=has_next,
        next_cursor=str(end_cursor) if end_cursor else None,
    )


class SourceClient(RetryingClient):
    """Fetches pages of raw account addresses."""

    name = "graphql"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        policy: BackoffPolicy,
        graphql_url: str,
        sleep: Optional[Sleeper] = None,
    ):
        super().__init__(http_client, policy, sleep)
        self._url = graphql_url

    async def fetch_page(self, page_size: int, cursor: Optional[str] = None) -> Page:
        variables = {"first": page_size, "after": cursor or None}

        async def attempt() -> Page:
            response = await self._client.post(self._url, json={"query": ALL_ACCOUNTS_QUERY, "variables": variables})
            raise_for_classified_status(response)
            return parse_page(decode_json(response))

        page = await self.call_with_retry(attempt, f"allAccounts(first={page_size}, after={cursor!r})", context=cursor)
        logger.info(
            f"Fetched {len(page.identifiers)} accounts "
            f"(hasNextPage={page.has_next_page}, endCursor={page.next_cursor})"
        )
        return page

    async def check_connection(self) -> bool:
        try:
            await self.fetch_page(1)
        except SourceUnavailable as e:
            logger.error(f"GraphQL connection test failed: {e}")
            return False
        logger.info("GraphQL connection test successful")
        return True

    def _unavailable(self, message, classification, attempts, context) -> SourceUnavailable:
        return SourceUnavailable(f"GraphQL request failed: {message}", classification, attempts, cursor=context)
