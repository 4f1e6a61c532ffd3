"""In-memory key-value store."""

from __future__ import annotations

import asyncio


class InMemoryStore:
    """Async dict-backed store.

    Every operation runs under one ``asyncio.Lock`` so each call is atomic
    with respect to other coroutines on the same event loop.
    """

    def __init__(self, initial: dict[str, str] | None = None):
        self._data: dict[str, str] = dict(initial or {})
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> str | None:
        async with self._lock:
            return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            self._data[key] = value

    async def remove(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def get_keys(self) -> list[str]:
        async with self._lock:
            return list(self._data)

    def snapshot(self) -> dict[str, str]:
        """Copy of the raw key -> JSON mapping, for serialization."""
        return dict(self._data)
