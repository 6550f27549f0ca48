"""Entry storage for the response cache.

Storage is decoupled from cache policy. The cache owns TTL and eviction
decisions; stores only keep entries in insertion order. A durable backend can
implement the interface as long as ``keys()`` preserves insertion order and a
replaced key keeps its original position.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterator
from typing import Any

from beacon_core.cache.entry import CacheEntry


class AbstractCacheStore(ABC):
    """Abstract cache entry store."""

    @abstractmethod
    def get(self, key: str) -> CacheEntry[Any] | None:
        """Return the entry for ``key`` or ``None``."""

    @abstractmethod
    def set(self, entry: CacheEntry[Any]) -> None:
        """Insert or replace ``entry`` under ``entry.key``."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove ``key``; return whether it was present."""

    @abstractmethod
    def clear(self) -> None:
        """Remove every entry."""

    @abstractmethod
    def keys(self) -> Iterator[str]:
        """Iterate keys, oldest-inserted first."""

    @abstractmethod
    def __len__(self) -> int:
        """Return the number of stored entries."""


class InMemoryCacheStore(AbstractCacheStore):
    """Volatile store backed by an insertion-ordered dict."""

    def __init__(self) -> None:
        """Initialize an empty entry table."""
        self._entries: dict[str, CacheEntry[Any]] = {}

    def get(self, key: str) -> CacheEntry[Any] | None:
        """Return the entry for ``key`` or ``None``."""
        return self._entries.get(key)

    def set(self, entry: CacheEntry[Any]) -> None:
        """Insert or replace ``entry``; replacing keeps insertion position."""
        self._entries[entry.key] = entry

    def delete(self, key: str) -> bool:
        """Remove ``key``; return whether it was present."""
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        """Remove every entry."""
        self._entries.clear()

    def keys(self) -> Iterator[str]:
        """Iterate keys, oldest-inserted first."""
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)
