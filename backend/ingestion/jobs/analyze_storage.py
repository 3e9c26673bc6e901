from __future__ import annotations

"""Storage report: how snapshots are spread over the sharded data directory.

Read-only. Prints one JSON document with the distribution, the depth the
indexer would use on its next start, and the recommended depth for the
current file count.

Run:
  python ingestion/jobs/analyze_storage.py [--data-dir PATH] [--expected N] [--with-distribution]
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

# Ensure `backend/` is on sys.path so `import app...` works when run from repo root.
BASE_DIR = Path(__file__).resolve().parents[2]
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

from app.core.env import env_str, load_env_if_present  # noqa: E402
from ingestion.core.storage import (  # noqa: E402
    DEFAULT_EXPECTED_FILES,
    MAX_FILES_PER_DIRECTORY,
    analyze_distribution,
    optimal_depth,
    resolve_depth,
)


logger = logging.getLogger("indexer.storage")


def build_report(data_dir: Path, expected_file_count: Optional[int] = None, with_distribution: bool = False) -> dict:
    stats = analyze_distribution(data_dir)
    planned = resolve_depth(data_dir, expected_file_count=expected_file_count)
    recommended = optimal_depth(max(stats.total_files, expected_file_count or 0) or DEFAULT_EXPECTED_FILES)

    return {
        "event": "storage_report",
        "data_directory": str(data_dir),
        "stats": stats.as_dict(include_distribution=with_distribution),
        "current_depth": stats.dominant_depth,
        "planned_depth": planned,
        "recommended_depth": recommended,
        "skewed": stats.max_files_per_dir > MAX_FILES_PER_DIRECTORY
        or (stats.dominant_depth is not None and stats.dominant_depth != recommended),
    }


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(level=logging.WARNING, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    load_env_if_present()

    parser = argparse.ArgumentParser(description="Report snapshot distribution in the data directory")
    parser.add_argument("--data-dir", default=env_str("DATA_DIRECTORY", "./data"))
    parser.add_argument("--expected", type=int, default=None, help="Expected total file count")
    parser.add_argument("--with-distribution", action="store_true", help="Include per-directory counts")
    args = parser.parse_args(argv)

    try:
        report = build_report(Path(args.data_dir), args.expected, args.with_distribution)
    except ValueError as e:
        logger.error(f"Storage analysis failed: {e}")
        return 1

    print(json.dumps(report, ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
