"""Persists the byte cursor into the relay log as decimal text.

Writes are atomic (tmp + os.replace). Failures on either side never reach
the caller: a lost cursor only means re-delivery, which the dedup filter
absorbs.
"""

import logging
import os
import tempfile

logger = logging.getLogger(__name__)


class OffsetStore:
    def __init__(self, path: str):
        self._path = path

    @property
    def path(self) -> str:
        return self._path

    def load(self) -> int:
        """Return the saved cursor, or 0 if missing, unreadable or invalid."""
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                raw = f.read().strip()
        except FileNotFoundError:
            return 0
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Failed to read offset file %s: %s", self._path, e)
            return 0

        if not (raw.isascii() and raw.isdigit()):
            logger.warning("Ignoring invalid offset %r in %s", raw[:32], self._path)
            return 0
        return int(raw)

    def save(self, offset: int) -> bool:
        """Write *offset* atomically. Returns False (and logs) on failure."""
        directory = os.path.dirname(self._path) or "."
        tmp = None
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=directory, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(str(offset))
            os.replace(tmp, self._path)
            return True
        except OSError as e:
            logger.warning("Failed to save offset %d to %s: %s", offset, self._path, e)
            if tmp is not None and os.path.exists(tmp):
                os.unlink(tmp)
            return False
