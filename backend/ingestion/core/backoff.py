"""
Shared retry/backoff decision for every upstream call.

Both the account page client and the inspection client consult the same
BackoffPolicy instance, so a 429 from GraphQL and a 429 from REST are
treated identically.

Rules (attempt is 1-based, the attempt that just failed):
- UNCLASSIFIED: never retried.
- attempt >= max_retries + 1: never retried.
- RATE_LIMITED with retry-after: wait exactly that long, capped.
- RATE_LIMITED without retry-after, TRANSIENT: base_delay_ms * 2^attempt, capped.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_MS = 1000
DEFAULT_MAX_DELAY_MS = 60_000


class ErrorKind(str, Enum):
    """Classification of a failed upstream attempt."""
    UNCLASSIFIED = "unclassified"  # Malformed response, programming error
    TRANSIENT = "transient"        # Network glitch, timeout, non-2xx
    RATE_LIMITED = "rate_limited"  # 429 or protocol-level rate limit


@dataclass(frozen=True, slots=True)
class ErrorClassification:
    kind: ErrorKind
    status_code: Optional[int] = None
    retry_after_seconds: Optional[float] = None

    @classmethod
    def unclassified(cls) -> "ErrorClassification":
        return cls(ErrorKind.UNCLASSIFIED)

    @classmethod
    def transient(cls, status_code: Optional[int] = None) -> "ErrorClassification":
        return cls(ErrorKind.TRANSIENT, status_code=status_code)

    @classmethod
    def rate_limited(
        cls, retry_after_seconds: Optional[float] = None, status_code: Optional[int] = 429
    ) -> "ErrorClassification":
        return cls(ErrorKind.RATE_LIMITED, status_code=status_code, retry_after_seconds=retry_after_seconds)


@dataclass(frozen=True, slots=True)
class RetryDecision:
    retry: bool
    delay_ms: int = 0


class BackoffPolicy(BaseModel):
    """Pure decision function, shared verbatim by both network clients."""

    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0, le=10)
    base_delay_ms: int = Field(default=DEFAULT_BASE_DELAY_MS, ge=0)
    max_delay_ms: int = Field(default=DEFAULT_MAX_DELAY_MS, ge=0)

    model_config = ConfigDict(frozen=True)

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def decide(self, classification: ErrorClassification, attempt: int) -> RetryDecision:
        if attempt < 1:
            raise ValueError(f"attempt is 1-based, got {attempt}")

        if classification.kind == ErrorKind.UNCLASSIFIED:
            return RetryDecision(retry=False)

        if attempt >= self.max_attempts:
            return RetryDecision(retry=False)

        if classification.kind == ErrorKind.RATE_LIMITED and classification.retry_after_seconds is not None:
            delay = int(round(classification.retry_after_seconds * 1000))
            return RetryDecision(retry=True, delay_ms=min(delay, self.max_delay_ms))

        return RetryDecision(retry=True, delay_ms=self.exponential_delay_ms(attempt))

    def exponential_delay_ms(self, attempt: int) -> int:
        # Cap the exponent so huge attempt numbers cannot overflow into floats.
        exponent = min(attempt, 32)
        return min(self.base_delay_ms * (2 ** exponent), self.max_delay_ms)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds.

    HTTP-date values and garbage return None so the caller falls back to
    exponential backoff.
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    if not math.isfinite(seconds) or seconds < 0:
        return None
    return seconds
