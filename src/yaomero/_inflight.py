"""Coalescing of concurrent identical requests."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable
from typing import Generic, TypeVar

__all__ = ["InFlight"]

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class InFlight(Generic[K, V]):
    """Map of the operations currently running, keyed by request identity.

    The first caller of `run` for a key starts the operation; callers arriving
    while it is still running attach to it instead of starting a new one, and
    all of them receive the same result (or the same exception).  Once the
    operation finishes, the key is forgotten: a later call starts afresh.

    Keys are usually tuples of the form `(operation kind, target identity)`.

    Each waiter is shielded: cancelling one caller does not cancel the shared
    operation for the others.

    Examples
    --------
    >>> inflight = InFlight()
    >>> async def main():
    ...     async def fetch():
    ...         return 42
    ...     return await asyncio.gather(*(inflight.run("k", fetch) for _ in range(3)))
    >>> asyncio.run(main())
    [42, 42, 42]
    """

    def __init__(self) -> None:
        self._tasks: dict[K, asyncio.Task[V]] = {}

    @property
    def pending(self) -> frozenset[K]:
        """Keys of the operations currently running."""
        return frozenset(self._tasks)

    def __contains__(self, key: object) -> bool:
        return key in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    async def run(self, key: K, factory: Callable[[], Awaitable[V]]) -> V:
        """Run `factory()` for `key`, or join the run already in progress."""
        task = self._tasks.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._tasks[key] = task
            task.add_done_callback(lambda t, key=key: self._forget(key, t))
        else:
            logger.debug("Joining in-flight operation %r", key)
        return await asyncio.shield(task)

    def _forget(self, key: K, task: asyncio.Task[V]) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        # retrieve the exception so that it is not reported as never retrieved
        # when every waiter was cancelled
        if not task.cancelled():
            task.exception()
