"""TTL response cache with bounded size and a stale fallback path."""

from collections import OrderedDict
from datetime import UTC, datetime
from typing import Generic, TypeVar, cast

from beacon_core.cache.entry import CachedValue, CacheEntry, CacheStats
from beacon_core.cache.storage import AbstractCacheStore, InMemoryCacheStore
from beacon_core.logging import StructuredLogger, get_logger, log_info

T = TypeVar("T")

DEFAULT_MAX_ENTRIES = 50
DEFAULT_TTL_SECONDS = 300.0

_logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ResponseCache(Generic[T]):
    """Forward cache for call results, also used as the last-known-good store.

    ``get`` is the normal read path and never returns an expired entry: an
    expired entry is removed on access. ``get_stale`` is the fallback path used
    only after a live call failed; it ignores TTL and tags what it returns.
    Entries removed by expiry are kept on a bounded stale shelf so the fallback
    path can still serve them.
    """

    def __init__(
        self,
        *,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        store: AbstractCacheStore | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        """Create a cache.

        Args:
            max_entries: Resident entry bound; the oldest-inserted entry is
                evicted first.
            default_ttl: Lifetime in seconds used when ``set`` gets no TTL.
            store: Entry storage. Defaults to an in-memory store.
            logger: Structured logger for eviction events.
        """
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        if default_ttl < 0:
            raise ValueError("default_ttl must be >= 0")
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self._store = InMemoryCacheStore() if store is None else store
        self._stale: OrderedDict[str, CacheEntry[T]] = OrderedDict()
        self._logger = _logger if logger is None else logger

    def _entry(self, key: str) -> CacheEntry[T] | None:
        return cast(CacheEntry[T] | None, self._store.get(key))

    def _retire(self, entry: CacheEntry[T]) -> None:
        self._stale[entry.key] = entry
        self._stale.move_to_end(entry.key)
        while len(self._stale) > self.max_entries:
            self._stale.popitem(last=False)

    def lookup(self, key: str) -> CachedValue[T] | None:
        """Return the fresh entry for ``key`` or ``None`` when missing or expired.

        Unlike ``get``, a stored ``None`` comes back wrapped, so it is not
        mistaken for a miss.
        """
        now = _utcnow()
        entry = self._entry(key)
        if entry is None:
            return None
        if entry.is_expired(now):
            self._store.delete(key)
            self._retire(entry)
            return None
        return CachedValue(data=entry.data, stale=False, age=entry.age(now))

    def get(self, key: str) -> T | None:
        """Return fresh data for ``key`` or ``None`` when missing or expired."""
        cached = self.lookup(key)
        return None if cached is None else cached.data

    def get_stale(self, key: str) -> CachedValue[T] | None:
        """Return the last stored data for ``key`` regardless of TTL."""
        now = _utcnow()
        entry = self._entry(key)
        if entry is None:
            entry = self._stale.get(key)
        if entry is None:
            return None
        return CachedValue(
            data=entry.data,
            stale=entry.is_expired(now),
            age=entry.age(now),
        )

    def set(self, key: str, data: T, ttl: float | None = None) -> None:
        """Store ``data`` under ``key`` for ``ttl`` seconds."""
        resolved_ttl = self.default_ttl if ttl is None else ttl
        if resolved_ttl < 0:
            raise ValueError("ttl must be >= 0")
        if self._store.get(key) is None and len(self._store) >= self.max_entries:
            oldest = next(self._store.keys(), None)
            if oldest is not None:
                self._store.delete(oldest)
                log_info(
                    self._logger,
                    "cache.evicted",
                    key=oldest,
                    max_entries=self.max_entries,
                )
        self._stale.pop(key, None)
        self._store.set(
            CacheEntry(key=key, data=data, created_at=_utcnow(), ttl=resolved_ttl)
        )

    def delete(self, key: str) -> bool:
        """Remove ``key`` from both read paths; return whether it was resident."""
        self._stale.pop(key, None)
        return self._store.delete(key)

    def clear(self) -> None:
        """Remove every entry from both read paths."""
        self._store.clear()
        self._stale.clear()

    def stats(self) -> CacheStats:
        """Return resident entry count and keys, oldest-inserted first."""
        keys = tuple(self._store.keys())
        return CacheStats(size=len(keys), keys=keys)

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        return self.lookup(key) is not None
