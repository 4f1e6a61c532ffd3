"""Key-value store interface backing the token cache.

The cache only needs four string operations. Stores may implement them
synchronously (a dict, a file) or asynchronously (a remote service); the
cache manager awaits async methods and runs sync ones in a worker thread.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Sequence
from typing import Protocol, TypeVar

T = TypeVar("T")

MaybeAwaitable = T | Awaitable[T]


class KeyValueStore(Protocol):
    """Flat string -> string store.

    Implementations are responsible for single-key atomicity and for their
    own concurrent-access safety. No multi-key transaction is assumed.
    """

    def get(self, key: str) -> MaybeAwaitable[str | None]:
        """Return the value stored under ``key`` or None."""
        ...

    def set(self, key: str, value: str) -> MaybeAwaitable[None]:
        """Store ``value`` under ``key``, replacing any previous value."""
        ...

    def remove(self, key: str) -> MaybeAwaitable[None]:
        """Delete ``key``. Removing a missing key is not an error."""
        ...

    def get_keys(self) -> MaybeAwaitable[Sequence[str]]:
        """Return a snapshot of every key currently stored."""
        ...


async def call_store(operation: Callable[..., MaybeAwaitable[T]], *args: str) -> T:
    """Run one store operation without blocking the event loop.

    Coroutine methods are awaited directly. Synchronous ones run in a worker
    thread.
    """
    if inspect.iscoroutinefunction(operation):
        return await operation(*args)
    result = await asyncio.to_thread(operation, *args)
    if inspect.isawaitable(result):
        return await result
    return result
