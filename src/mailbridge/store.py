"""Durable cursor store.

Persists the watermark (the UID of the last fetched message) in a small JSON
key/value file. Every write goes through ``atomic_write`` so the value on
disk is always either the previous or the new watermark, never a torn file,
and is durable once ``write()`` returns.

The watermark is monotonic: writes that would move it backwards are ignored.
``reset()`` is the one explicit way to forget it.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from .conventions import WATERMARK_KEY
from .errors import StoreError
from .fileutil import atomic_write

logger = logging.getLogger(__name__)


class CursorStore:
    """Single-integer durable store keyed by a fixed name."""

    def __init__(self, path: Path | str, key: str = WATERMARK_KEY) -> None:
        self._path = Path(path).expanduser()
        self._key = key
        self._closed = False
        self._data: dict[str, Any] = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, Any]:
        if not self._path.exists():
            logger.info("No cursor store at %s yet, starting fresh", self._path)
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"Cannot read cursor store {self._path}: {e}") from e
        if not isinstance(data, dict):
            raise StoreError(f"Cursor store {self._path} is not a JSON object")
        return data

    def _check_open(self) -> None:
        if self._closed:
            raise StoreError(f"Cursor store {self._path} is closed")

    def _persist(self, data: dict[str, Any]) -> None:
        try:
            atomic_write(self._path, json.dumps(data, indent=2, sort_keys=True))
        except OSError as e:
            raise StoreError(f"Cannot write cursor store {self._path}: {e}") from e
        self._data = data

    def read(self) -> int | None:
        """Return the watermark, or None if none has been stored yet."""
        self._check_open()
        value = self._data.get(self._key)
        if value is None:
            return None
        # bool is an int subclass; a stored true/false is corruption
        if isinstance(value, bool) or not isinstance(value, int):
            raise StoreError(f"Corrupt watermark {value!r} in {self._path}")
        return value

    def write(self, uid: int) -> None:
        """Advance the watermark to *uid*. Never moves it backwards."""
        self._check_open()
        current = self.read()
        if current is not None and uid <= current:
            logger.debug("Ignoring watermark write %d (current %d)", uid, current)
            return
        self._persist({**self._data, self._key: uid})
        logger.debug("Watermark advanced to %d", uid)

    def reset(self) -> None:
        """Forget the watermark so the next run uses first-run scoping."""
        self._check_open()
        if self._key not in self._data:
            return
        data = {k: v for k, v in self._data.items() if k != self._key}
        self._persist(data)
        logger.info("Watermark cleared in %s", self._path)

    def close(self) -> None:
        """Close the store. Safe to call more than once."""
        if not self._closed:
            self._closed = True
            logger.debug("Cursor store %s closed", self._path)
