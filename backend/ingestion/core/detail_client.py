"""Account inspection client (tonapi.io REST `/blockchain/accounts/{address}/inspect`)."""

from __future__ import annotations

import logging
from typing import Any, Optional
from urllib.parse import quote

import httpx

from ingestion.core.backoff import BackoffPolicy, ErrorClassification, ErrorKind
from ingestion.core.errors import ClassifiedFailure, DetailUnavailable
from ingestion.core.network_client import RetryingClient, Sleeper, decode_json, raise_for_classified_status

logger = logging.getLogger(__name__)

# Known-good mainnet address used for the startup connectivity probe
DEFAULT_PROBE_ADDRESS = "EQCD39VS5jcptHL8vMjEXrzGaRcCVYto7HUn4bpAOg8xqB2N"


def inspect_path(identifier: str) -> str:
    return f"/blockchain/accounts/{quote(identifier, safe='')}/inspect"


class DetailClient(RetryingClient):
    """Fetches one account's inspection payload. The payload is returned as decoded, never reshaped."""

    name = "rest"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        policy: BackoffPolicy,
        sleep: Optional[Sleeper] = None,
        probe_address: str = DEFAULT_PROBE_ADDRESS,
    ):
        super().__init__(http_client, policy, sleep)
        self._probe_address = probe_address

    async def fetch_detail(self, identifier: str) -> dict[str, Any]:
        path = inspect_path(identifier)

        async def attempt() -> dict[str, Any]:
            response = await self._client.get(path)
            raise_for_classified_status(response)
            data = decode_json(response)
            if not isinstance(data, dict):
                raise ClassifiedFailure(
                    f"Inspect response is not an object ({type(data).__name__})",
                    ErrorClassification(ErrorKind.UNCLASSIFIED, status_code=response.status_code),
                )
            return data

        snapshot = await self.call_with_retry(attempt, f"inspect {identifier}", context=identifier)
        logger.debug(f"Contract inspection successful for {identifier}")
        return snapshot

    async def check_connection(self) -> bool:
        try:
            await self.fetch_detail(self._probe_address)
        except DetailUnavailable as e:
            logger.error(f"REST API connection test failed: {e}")
            return False
        logger.info("REST API connection test successful")
        return True

    def _unavailable(self, message, classification, attempts, context) -> DetailUnavailable:
        return DetailUnavailable(message, classification, attempts, identifier=context or "")
