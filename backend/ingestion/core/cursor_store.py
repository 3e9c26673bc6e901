"""
Cursor persistence for the account enumeration.

The cursor file holds exactly one opaque token: "every account up to here has
been enumerated". It is replaced as a whole on every save (temp file + rename),
never appended, so a crash leaves either the old or the new cursor.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from ingestion.core.errors import CursorIOError

logger = logging.getLogger(__name__)


class CursorStore:
    """Loads and saves the pagination cursor from a single file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Optional[str]:
        """Return the persisted cursor, or None when starting from the beginning."""
        try:
            if not self.path.exists():
                logger.info(f"Cursor file {self.path} does not exist, starting from the beginning")
                return None
            cursor = self.path.read_text(encoding="utf-8").strip()
        except OSError as e:
            raise CursorIOError(f"Failed to read cursor file: {e}", str(self.path)) from e

        if not cursor:
            logger.info(f"Cursor file {self.path} is empty, starting from the beginning")
            return None
        logger.info(f"Loaded cursor {cursor}")
        return cursor

    def save(self, cursor: str) -> None:
        if not cursor:
            raise CursorIOError("Refusing to persist an empty cursor", str(self.path), cursor)

        tmp = self.path.with_name(f".{self.path.name}.{os.getpid()}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(cursor)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except OSError as e:
            try:
                tmp.unlink(missing_ok=True)
            except OSError:
                logger.warning(f"Could not remove temp cursor file {tmp}")
            raise CursorIOError(f"Failed to save cursor: {e}", str(self.path), cursor) from e

        logger.debug(f"Saved cursor {cursor} to {self.path}")

