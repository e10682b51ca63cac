"""Bounded LRU cache fronting tile and thumbnail fetches.

On a hit the cached value is returned without any remote call.  On a miss,
exactly one fetch runs per key, even when many callers ask for the same key
at once (see `InFlight`).  A failed fetch is reported to every waiting caller
and nothing is cached for that key.

Eviction removes the least-recently-used entries until both the entry count
and the total byte size are within their bounds.
"""

from __future__ import annotations

import itertools
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass
from typing import Generic, TypeVar

from yaomero._inflight import InFlight

__all__ = ["CacheEntry", "LRUCache"]

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


def _nbytes(value: object) -> int:
    """Approximate size of a cached value (numpy arrays and bytes)."""
    nbytes = getattr(value, "nbytes", None)
    if isinstance(nbytes, int):
        return nbytes
    if isinstance(value, (bytes, bytearray, memoryview)):
        return len(value)
    return 0


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    """A cached value and its freshness token.

    Tokens increase monotonically with each insertion into a cache, so a
    larger token always means a more recently fetched value.
    """

    value: V
    token: int
    nbytes: int


class LRUCache(Generic[K, V]):
    """Bounded cache with request de-duplication.

    Parameters
    ----------
    max_entries : int | None
        Maximum number of entries.  None means unbounded.
    max_bytes : int | None
        Maximum total size of the entries, as given by their `nbytes`.
        None means unbounded.
    """

    def __init__(
        self, max_entries: int | None = None, max_bytes: int | None = None
    ) -> None:
        if max_entries is not None and max_entries <= 0:
            raise ValueError("max_entries must be positive")
        if max_bytes is not None and max_bytes <= 0:
            raise ValueError("max_bytes must be positive")
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self._entries: OrderedDict[K, CacheEntry[V]] = OrderedDict()
        self._inflight: InFlight[K, V] = InFlight()
        self._tokens = itertools.count(1)
        self._nbytes = 0
        self._closed = False
        self.hits = 0
        self.misses = 0

    def __repr__(self) -> str:
        return (
            f"<LRUCache entries={len(self)} nbytes={self._nbytes} "
            f"max_entries={self.max_entries} max_bytes={self.max_bytes}>"
        )

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    @property
    def nbytes(self) -> int:
        """Total size of the cached values."""
        return self._nbytes

    @property
    def closed(self) -> bool:
        return self._closed

    def keys(self) -> list[K]:
        """Cached keys, from least to most recently used."""
        return list(self._entries)

    def get_entry(self, key: K) -> CacheEntry[V] | None:
        """Return the entry for `key` (marking it as recently used), or None."""
        entry = self._entries.get(key)
        if entry is not None:
            self._entries.move_to_end(key)
        return entry

    def put(self, key: K, value: V) -> CacheEntry[V]:
        """Insert or replace a value, then evict to stay within bounds."""
        if (old := self._entries.pop(key, None)) is not None:
            self._nbytes -= old.nbytes
        entry = CacheEntry(value=value, token=next(self._tokens), nbytes=_nbytes(value))
        self._entries[key] = entry
        self._nbytes += entry.nbytes
        self._evict()
        return entry

    async def get_or_fetch(
        self,
        key: K,
        fetch: Callable[[], Awaitable[V]],
        store: Callable[[], bool] | None = None,
    ) -> V:
        """Return the cached value for `key`, fetching it on a miss.

        Concurrent misses on the same key share one call to `fetch`.  If the
        cache is closed while the fetch runs, or if `store()` returns False
        once it completed, the result is still returned to the callers but is
        not stored.
        """
        if (entry := self.get_entry(key)) is not None:
            self.hits += 1
            logger.debug("Cache hit for %s", key)
            return entry.value

        async def _fetch_and_store() -> V:
            self.misses += 1
            value = await fetch()
            if not self._closed and (store is None or store()):
                self.put(key, value)
            return value

        return await self._inflight.run(key, _fetch_and_store)

    def discard(self, key: K) -> None:
        if (entry := self._entries.pop(key, None)) is not None:
            self._nbytes -= entry.nbytes

    def clear(self) -> None:
        self._entries.clear()
        self._nbytes = 0

    def close(self) -> None:
        """Empty the cache and stop storing the results of running fetches."""
        self._closed = True
        self.clear()

    def _evict(self) -> None:
        while self._entries and (
            (self.max_entries is not None and len(self._entries) > self.max_entries)
            or (self.max_bytes is not None and self._nbytes > self.max_bytes)
        ):
            key, entry = self._entries.popitem(last=False)
            self._nbytes -= entry.nbytes
            logger.debug("Evicted %s from cache", key)
