"""JSON file key-value store.

Persists the whole flat key -> JSON-value mapping as one JSON object. Writes
go to a temporary file in the same directory which then replaces the
original, so readers in other processes never see a half-written file.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path

from tokensmith.models.errors import CacheIOError

logger = logging.getLogger(__name__)


class JsonFileStore:
    """Synchronous file-backed store.

    The cache manager calls it from worker threads; one lock serializes
    every read-modify-write.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._save(data)

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if data.pop(key, None) is not None:
                self._save(data)

    def get_keys(self) -> list[str]:
        with self._lock:
            return list(self._load())

    def _load(self) -> dict[str, str]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise CacheIOError(
                f"Failed to read cache file {self.path}: {e}", operation="read"
            ) from e

        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise CacheIOError(
                f"Cache file {self.path} is not valid JSON: {e}", operation="read"
            ) from e
        if not isinstance(data, dict):
            raise CacheIOError(
                f"Cache file {self.path} does not hold a JSON object", operation="read"
            )
        return data

    def _save(self, data: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp_name, self.path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise CacheIOError(
                f"Failed to write cache file {self.path}: {e}", operation="write"
            ) from e
        logger.debug(f"Persisted {len(data)} cache entries to {self.path}")
