"""Indexer configuration.

Constraints:
- Configuration is via environment variables only (.env loaded by process runner).
- Values are validated once at startup; an invalid value stops the process
  before any upstream call is made.
"""

from __future__ import annotations

from pathlib import Path
from typing import Final, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from app.core.env import env_str, load_env_if_present
from ingestion.core.address_filter import parse_patterns
from ingestion.core.backoff import BackoffPolicy
from ingestion.core.errors import ConfigError


API_KEY_ENV: Final[str] = "TONAPI_KEY"

BACKEND_DIR = Path(__file__).resolve().parents[2]
DEFAULT_FILTER_YAML = BACKEND_DIR / "ingestion" / "config" / "address_filter.yaml"

# env var -> settings field
_ENV_FIELDS: Final[dict[str, str]] = {
    "TONAPI_GRAPHQL_URL": "graphql_url",
    "TONAPI_REST_URL": "rest_url",
    "CURSOR_FILE_PATH": "cursor_file_path",
    "DATA_DIRECTORY": "data_directory",
    "MAX_CONCURRENT_REQUESTS": "max_concurrent_requests",
    "ACCOUNTS_PER_PAGE": "accounts_per_page",
    "MAX_RETRIES": "max_retries",
    "RETRY_DELAY_MS": "retry_delay_ms",
    "RATE_LIMIT_MAX_DELAY_MS": "rate_limit_max_delay_ms",
    "REQUEST_TIMEOUT_SECONDS": "request_timeout_seconds",
    "DIRECTORY_LEVELS": "directory_levels",
    "EXPECTED_FILE_COUNT": "expected_file_count",
    "ADDRESS_FILTER_YAML": "address_filter_yaml",
    "ITERATION_DELAY_MS": "iteration_delay_ms",
    "END_OF_DATA_WAIT_MS": "end_of_data_wait_ms",
    "ERROR_RETRY_DELAY_MS": "error_retry_delay_ms",
    "SHUTDOWN_GRACE_SECONDS": "shutdown_grace_seconds",
    "PROBE_ADDRESS": "probe_address",
    "LOG_LEVEL": "log_level",
}


class IndexerSettings(BaseModel):
    """Validated runtime configuration."""

    api_key: str = Field(min_length=1)
    graphql_url: str = "https://tonapi.io/v2/graphql"
    rest_url: str = "https://tonapi.io/v2"
    cursor_file_path: Path = Path("./cursor.txt")
    data_directory: Path = Path("./data")

    max_concurrent_requests: int = Field(default=4, ge=1, le=10)
    accounts_per_page: int = Field(default=100, ge=1, le=1000)
    max_retries: int = Field(default=3, ge=0, le=10)
    retry_delay_ms: int = Field(default=1000, ge=0)
    rate_limit_max_delay_ms: int = Field(default=60_000, ge=0)
    request_timeout_seconds: float = Field(default=30.0, gt=0)

    directory_levels: Optional[int] = Field(default=None, ge=2, le=6)
    expected_file_count: Optional[int] = Field(default=None, ge=0)
    custom_skip_patterns: list[str] = Field(default_factory=list)
    address_filter_yaml: Optional[Path] = DEFAULT_FILTER_YAML

    # None = per run mode default
    iteration_delay_ms: Optional[int] = Field(default=None, ge=0)
    end_of_data_wait_ms: int = Field(default=60_000, ge=0)
    error_retry_delay_ms: int = Field(default=30_000, ge=0)
    shutdown_grace_seconds: float = Field(default=5.0, ge=0)

    probe_address: str = "EQCD39VS5jcptHL8vMjEXrzGaRcCVYto7HUn4bpAOg8xqB2N"
    log_level: str = "INFO"

    model_config = ConfigDict(frozen=True)

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {v}")
        return v

    def backoff_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            max_retries=self.max_retries,
            base_delay_ms=self.retry_delay_ms,
            max_delay_ms=self.rate_limit_max_delay_ms,
        )

    def safe_summary(self) -> dict:
        """Loggable view; the API key never leaves this object."""
        return {
            "graphql_url": self.graphql_url,
            "rest_url": self.rest_url,
            "data_directory": str(self.data_directory),
            "cursor_file_path": str(self.cursor_file_path),
            "max_concurrent_requests": self.max_concurrent_requests,
            "accounts_per_page": self.accounts_per_page,
            "max_retries": self.max_retries,
            "directory_levels": self.directory_levels or "auto",
        }


def load_settings() -> IndexerSettings:
    load_env_if_present()

    api_key = env_str(API_KEY_ENV)
    if not api_key:
        raise ConfigError(f"Required environment variable {API_KEY_ENV} is not set")

    values: dict = {"api_key": api_key}
    for env_name, field_name in _ENV_FIELDS.items():
        raw = env_str(env_name)
        if raw is not None:
            values[field_name] = raw
    values["custom_skip_patterns"] = parse_patterns(env_str("CUSTOM_SKIP_PATTERNS"))

    try:
        return IndexerSettings(**values)
    except ValidationError as e:
        env_names = {v: k for k, v in _ENV_FIELDS.items()}
        env_names.update(api_key=API_KEY_ENV, custom_skip_patterns="CUSTOM_SKIP_PATTERNS")
        problems = "; ".join(
            f"{env_names.get(str(err['loc'][0]), err['loc'][0]) if err['loc'] else 'config'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}") from e
