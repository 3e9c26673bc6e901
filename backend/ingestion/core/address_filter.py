"""Pre-Filter Layer - drop TON addresses whose inspection is known to fail before any network call.

Philosophy: every inspect call costs rate-limit budget.
Goal: never spend it on reserved/system/uninitialized addresses.

The thresholds below were tuned against upstream error logs ("not enough bytes
for magic prefix" and similar). They are heuristics, not an exact
classification, so every one of them can be overridden from YAML.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from ingestion.core.errors import FilterConfigError

logger = logging.getLogger("indexer.ingestion.filter")


class SkipReason:
    RESERVED_SHARD = "reserved_shard"
    INVALID_LENGTH = "invalid_length"
    ZERO_HEAVY = "zero_heavy"
    SYSTEM_PATTERN = "system_pattern"
    TOO_SHORT = "too_short"
    CUSTOM_PATTERN = "custom_pattern"


# Patterns applied to the payload of system-shard addresses
SYSTEM_PATTERNS = [
    r"^0{20,}",                          # nonexist/uninit contracts
    r"^fffffffffffff",                   # service addresses
    r"fffffffffff$",
    r"^[0-9a-f]{10,}0{20,}",             # config/validator: data then zeros
    r"0{15,}[0-9a-f]{5,}$",              # zeros followed by short data
    r"^0000000000000000000000000[0-9a-f]{10,}$",
]


class AddressFilterConfig(BaseModel):
    """Tunable heuristics. Defaults match the TON workchain layout."""

    reserved_shards: list[str] = Field(default_factory=lambda: ["-2"])
    system_shards: list[str] = Field(default_factory=lambda: ["-1"])
    system_payload_length: int = 64
    system_zero_ratio: float = Field(default=0.55, ge=0.0, le=1.0)
    normal_zero_ratio: float = Field(default=0.75, ge=0.0, le=1.0)
    system_patterns: list[str] = Field(default_factory=lambda: list(SYSTEM_PATTERNS))
    chunk_size: int = Field(default=8, ge=1)
    min_chunks: int = Field(default=8, ge=1)
    max_distinct_chunks: int = Field(default=2, ge=0)
    min_length: int = Field(default=10, ge=0)
    custom_patterns: list[str] = Field(default_factory=list)


@dataclass(frozen=True, slots=True)
class FilterDecision:
    keep: bool
    reason: Optional[str] = None


KEEP = FilterDecision(keep=True)


@dataclass
class FilterStats:
    """Running totals. Owned by whoever builds the filter and passed in explicitly."""

    total: int = 0
    kept: int = 0
    skipped: int = 0
    skipped_by_reason: dict[str, int] = field(default_factory=dict)

    def record(self, decision: FilterDecision) -> None:
        self.total += 1
        if decision.keep:
            self.kept += 1
            return
        self.skipped += 1
        reason = decision.reason or "unknown"
        self.skipped_by_reason[reason] = self.skipped_by_reason.get(reason, 0) + 1

    def snapshot(self) -> dict:
        skip_percentage = round(self.skipped / self.total * 100, 2) if self.total else 0.0
        return {
            "total": self.total,
            "kept": self.kept,
            "skipped": self.skipped,
            "skipped_by_reason": dict(self.skipped_by_reason),
            "skip_percentage": skip_percentage,
        }

    def reset(self) -> None:
        self.total = 0
        self.kept = 0
        self.skipped = 0
        self.skipped_by_reason = {}


def _zero_ratio(payload: str) -> float:
    if not payload:
        return 0.0
    return payload.count("0") / len(payload)


class AddressFilter:
    """Heuristic pre-filter for raw TON addresses (`<workchain>:<hex>`)."""

    def __init__(self, config: Optional[AddressFilterConfig] = None, stats: Optional[FilterStats] = None):
        self.config = config or AddressFilterConfig()
        self.stats = stats if stats is not None else FilterStats()

        # Compile regex patterns once
        self._system_patterns = [re.compile(p) for p in self.config.system_patterns]
        self._custom_patterns: list[tuple[str, re.Pattern]] = []
        self.invalid_patterns: list[FilterConfigError] = []
        for pattern in self.config.custom_patterns:
            try:
                self._custom_patterns.append((pattern, re.compile(pattern)))
            except re.error as e:
                err = FilterConfigError(pattern, str(e))
                self.invalid_patterns.append(err)
                logger.warning(f"{err}. Pattern ignored.")

        self._reserved = set(self.config.reserved_shards)
        self._system = set(self.config.system_shards)

    def classify(self, identifier: str) -> FilterDecision:
        decision = self._evaluate(identifier)
        self.stats.record(decision)
        return decision

    def should_process(self, identifier: str) -> bool:
        return self.classify(identifier).keep

    def _evaluate(self, identifier: str) -> FilterDecision:
        cfg = self.config
        shard, sep, payload = identifier.partition(":")
        well_formed = bool(sep) and ":" not in payload

        # 1. Reserved shards: every inspect call fails upstream
        if sep and shard in self._reserved:
            return FilterDecision(False, SkipReason.RESERVED_SHARD)

        # 2. System shards and zero density
        if sep and shard in self._system:
            if len(payload) != cfg.system_payload_length:
                return FilterDecision(False, SkipReason.INVALID_LENGTH)
            if _zero_ratio(payload) > cfg.system_zero_ratio:
                return FilterDecision(False, SkipReason.ZERO_HEAVY)
            if self._is_system_pattern(payload):
                return FilterDecision(False, SkipReason.SYSTEM_PATTERN)
        elif well_formed and _zero_ratio(payload) > cfg.normal_zero_ratio:
            return FilterDecision(False, SkipReason.ZERO_HEAVY)

        # 3. Too short to be a real address
        if len(identifier) < cfg.min_length:
            return FilterDecision(False, SkipReason.TOO_SHORT)

        # 4. Operator patterns
        for raw, compiled in self._custom_patterns:
            if compiled.search(identifier):
                return FilterDecision(False, f"{SkipReason.CUSTOM_PATTERN}:{raw}")

        return KEEP

    def _is_system_pattern(self, payload: str) -> bool:
        for pattern in self._system_patterns:
            if pattern.search(payload):
                return True

        # Repetitive payloads ("0000000011111111...") are service addresses
        size = self.config.chunk_size
        chunks = [payload[i:i + size] for i in range(0, len(payload) - size + 1, size)]
        if len(chunks) >= self.config.min_chunks and len(set(chunks)) <= self.config.max_distinct_chunks:
            return True
        return False

    def log_stats(self) -> None:
        logger.info(f"Address filter statistics: {self.stats.snapshot()}")


def parse_patterns(raw: Optional[str]) -> list[str]:
    """Split a comma separated CUSTOM_SKIP_PATTERNS value."""
    if not raw:
        return []
    return [p.strip() for p in raw.split(",") if p.strip()]


def load_filter_config(path: Optional[Path], custom_patterns: Optional[list[str]] = None) -> AddressFilterConfig:
    """Load threshold overrides from YAML. A missing file means defaults.

    Expected layout:

        address_filter:
          system_zero_ratio: 0.55
          custom_patterns: ["^0:dead"]
    """
    overrides: dict = {}
    if path is not None and path.exists():
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Invalid {path.name}: expected a top-level mapping.")
        section = raw.get("address_filter", {}) or {}
        if not isinstance(section, dict):
            raise ValueError(f"Invalid {path.name}: 'address_filter' must be a mapping.")
        overrides = dict(section)

    if custom_patterns:
        overrides["custom_patterns"] = list(overrides.get("custom_patterns", [])) + list(custom_patterns)

    return AddressFilterConfig(**overrides)
