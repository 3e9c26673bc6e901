"""Dotenv loading for the indexer processes.

Lookup order: `$INDEXER_ENV_FILE` (if set), repo root `.env`, `backend/.env`.
Variables already present in the process environment always win unless
`override=True`.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

ENV_FILE_VAR = "INDEXER_ENV_FILE"

# backend/app/core/env.py -> repo root
_REPO_ROOT = Path(__file__).resolve().parents[3]
_QUOTES = ("'", '"')


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] in _QUOTES and value[-1] == value[0]:
        return value[1:-1]
    # Unquoted values may carry a trailing " # comment"
    comment = value.find(" #")
    return value[:comment].rstrip() if comment != -1 else value


def read_env_file(path: Path) -> dict[str, str]:
    """Parse `KEY=value` lines; `export KEY=value` and quoted values are accepted."""
    entries: dict[str, str] = {}
    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        name, _, value = line.partition("=")
        name = name.strip()
        if name:
            entries[name] = _unquote(value.strip())
    return entries


def default_env_files() -> list[Path]:
    files = [_REPO_ROOT / ".env", _REPO_ROOT / "backend" / ".env"]
    explicit = os.environ.get(ENV_FILE_VAR)
    if explicit:
        files.insert(0, Path(explicit))
    return files


def load_env_if_present(*, override: bool = False, candidates: Optional[list[Path]] = None) -> list[Path]:
    """Copy variables from every existing env file into os.environ.

    Returns the files that were actually read. Unreadable files are skipped.
    """
    loaded: list[Path] = []
    for path in default_env_files() if candidates is None else candidates:
        if not path.is_file():
            continue
        try:
            entries = read_env_file(path)
        except (OSError, UnicodeDecodeError):
            continue
        for name, value in entries.items():
            if override or name not in os.environ:
                os.environ[name] = value
        loaded.append(path)
    return loaded


def env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    """Read a variable, treating empty strings as unset."""
    value = os.environ.get(name, "").strip()
    return value or default
