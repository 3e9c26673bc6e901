from __future__ import annotations

"""Hierarchical, content-addressed snapshot store.

Layout rule (required):
- leaf dir = root / md5(address without EQ|UQ|kQ prefix)[0:2] / [2:4] / ... (`depth` levels)
- file     = inspect_<address, non-alphanumerics replaced by "_">.json

Important:
- Path computation is pure and deterministic: (address, depth) -> path.
- Writes go to a temp file in the leaf dir and are renamed into place, so
  exists() never reports a half-written snapshot.
- Depth is decided once per run (resolve_depth); changing it for an existing
  tree needs a separate migration pass.
"""

import hashlib
import json
import logging
import os
import re
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from ingestion.core.errors import StorageError

logger = logging.getLogger(__name__)

MAX_FILES_PER_DIRECTORY = 1000
SEGMENT_LENGTH = 2  # 2 hex chars -> 256 dirs per level
FANOUT = 256
MIN_DEPTH = 2
MAX_DEPTH = 6
DEFAULT_EXPECTED_FILES = 100_000

_COSMETIC_PREFIX = re.compile(r"^(EQ|UQ|kQ)")
_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9]")
_TMP_SUFFIX = ".tmp"


def _check_depth(depth: int) -> int:
    if not MIN_DEPTH <= depth <= MAX_DEPTH:
        raise ValueError(f"Directory depth must be between {MIN_DEPTH} and {MAX_DEPTH}, got {depth}")
    return depth


def address_digest(identifier: str) -> str:
    clean = _COSMETIC_PREFIX.sub("", identifier)
    return hashlib.md5(clean.encode("utf-8")).hexdigest()


def shard_path(identifier: str, depth: int) -> tuple[str, ...]:
    _check_depth(depth)
    digest = address_digest(identifier)
    return tuple(digest[i * SEGMENT_LENGTH:(i + 1) * SEGMENT_LENGTH] for i in range(depth))


def file_name(identifier: str) -> str:
    return f"inspect_{_UNSAFE_CHARS.sub('_', identifier)}.json"


def optimal_depth(expected_file_count: int) -> int:
    """Smallest depth in [2, 6] keeping the average leaf at <= 1000 files.

    Saturates at 6 (256^6 leaves); beyond ~2.8e17 files the bound no longer holds.
    """
    depth = MIN_DEPTH
    while expected_file_count / (FANOUT ** depth) > MAX_FILES_PER_DIRECTORY and depth < MAX_DEPTH:
        depth += 1
    if expected_file_count / (FANOUT ** depth) > MAX_FILES_PER_DIRECTORY:
        logger.warning(
            f"Expected {expected_file_count} files exceed {MAX_FILES_PER_DIRECTORY} per leaf even at depth {MAX_DEPTH}. "
            f"Using depth {MAX_DEPTH}."
        )
    return depth


@dataclass
class DistributionStats:
    total_files: int = 0
    total_directories: int = 0
    avg_files_per_dir: float = 0.0
    max_files_per_dir: int = 0
    min_files_per_dir: int = 0
    leaf_depths: dict[int, int] = field(default_factory=dict)
    distribution: dict[str, int] = field(default_factory=dict)

    @property
    def dominant_depth(self) -> Optional[int]:
        if not self.leaf_depths:
            return None
        return max(self.leaf_depths.items(), key=lambda kv: (kv[1], kv[0]))[0]

    def as_dict(self, include_distribution: bool = False) -> dict[str, Any]:
        out: dict[str, Any] = {
            "total_files": self.total_files,
            "total_directories": self.total_directories,
            "avg_files_per_dir": round(self.avg_files_per_dir, 2),
            "max_files_per_dir": self.max_files_per_dir,
            "min_files_per_dir": self.min_files_per_dir,
            "leaf_depths": {str(k): v for k, v in sorted(self.leaf_depths.items())},
        }
        if include_distribution:
            out["distribution"] = dict(self.distribution)
        return out


def analyze_distribution(root: Path) -> DistributionStats:
    """Scan `root` and report how snapshot files are spread over leaf directories.

    Only directories that directly hold *.json files count as leaves.
    """
    stats = DistributionStats()
    root = Path(root)
    if not root.is_dir():
        return stats

    min_files: Optional[int] = None
    for dirpath, _dirnames, filenames in os.walk(root):
        count = sum(1 for f in filenames if f.endswith(".json"))
        if count == 0:
            continue
        rel = Path(dirpath).relative_to(root)
        depth = len(rel.parts)
        stats.total_directories += 1
        stats.total_files += count
        stats.distribution[rel.as_posix() if rel.parts else "root"] = count
        stats.leaf_depths[depth] = stats.leaf_depths.get(depth, 0) + 1
        stats.max_files_per_dir = max(stats.max_files_per_dir, count)
        min_files = count if min_files is None else min(min_files, count)

    stats.min_files_per_dir = min_files or 0
    if stats.total_directories:
        stats.avg_files_per_dir = stats.total_files / stats.total_directories
    return stats


def resolve_depth(
    root: Path,
    override: Optional[int] = None,
    expected_file_count: Optional[int] = None,
) -> int:
    """Decide the directory depth for this run. Called once at startup."""
    if override is not None:
        depth = _check_depth(override)
        logger.info(f"Using configured directory depth {depth}")
        return depth

    stats = analyze_distribution(root)
    if stats.total_files > 0 and stats.dominant_depth is not None:
        depth = stats.dominant_depth
        if not MIN_DEPTH <= depth <= MAX_DEPTH:
            raise ValueError(
                f"Existing snapshots under {root} sit at depth {depth}, outside {MIN_DEPTH}-{MAX_DEPTH}. "
                "Migrate the tree or set DIRECTORY_LEVELS."
            )
        recommended = optimal_depth(max(stats.total_files, expected_file_count or 0))
        logger.info(
            f"Detected existing layout: {stats.total_files} files in {stats.total_directories} dirs at depth {depth} "
            f"(avg {stats.avg_files_per_dir:.2f}, max {stats.max_files_per_dir}, recommended depth {recommended})"
        )
        if len(stats.leaf_depths) > 1:
            logger.warning(f"Mixed leaf depths under {root}: {stats.leaf_depths}. Using dominant depth {depth}.")
        if stats.max_files_per_dir > MAX_FILES_PER_DIRECTORY or recommended != depth:
            logger.warning(
                f"Directory distribution skewed (max {stats.max_files_per_dir} files per dir, "
                f"recommended depth {recommended}). Consider a migration pass."
            )
        return depth

    depth = optimal_depth(expected_file_count or DEFAULT_EXPECTED_FILES)
    logger.info(f"No existing snapshots; planned directory depth {depth}")
    return depth


def render_snapshot(snapshot: Any) -> str:
    return json.dumps(snapshot, indent=2, ensure_ascii=False)


class HierarchicalStore:
    """Maps addresses to leaf files and writes each snapshot at most once."""

    def __init__(self, root: Path, depth: int):
        self.root = Path(root)
        self.depth = _check_depth(depth)

    def path_for(self, identifier: str) -> Path:
        return self.root.joinpath(*shard_path(identifier, self.depth), file_name(identifier))

    def ensure_root(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create data directory: {e}", identifier="", path=str(self.root)) from e

    def exists(self, identifier: str) -> bool:
        path = self.path_for(identifier)
        try:
            return path.is_file()
        except OSError as e:
            raise StorageError(f"Failed to check snapshot: {e}", identifier, str(path)) from e

    def write(self, identifier: str, snapshot: Any) -> Path:
        target = self.path_for(identifier)
        try:
            payload = render_snapshot(snapshot)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Snapshot is not serializable: {e}", identifier, str(target)) from e

        tmp = target.with_name(f".{target.name}.{os.getpid()}.{uuid.uuid4().hex}{_TMP_SUFFIX}")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, target)
        except OSError as e:
            try:
                tmp.unlink(missing_ok=True)
            except OSError:
                logger.warning(f"Could not remove temp file {tmp}")
            raise StorageError(f"Failed to save snapshot: {e}", identifier, str(target)) from e

        logger.debug(f"Saved {identifier} -> {target}")
        return target
