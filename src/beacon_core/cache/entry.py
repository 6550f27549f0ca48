"""Cache value types."""

from dataclasses import dataclass
from datetime import datetime
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """One cached value. Replaced wholesale on ``set``, never mutated.

    Attributes:
        key: Cache key.
        data: Cached payload.
        created_at: When the entry was stored.
        ttl: Lifetime in seconds.
    """

    key: str
    data: T
    created_at: datetime
    ttl: float

    def age(self, now: datetime) -> float:
        """Return the entry age in seconds."""
        return (now - self.created_at).total_seconds()

    def is_expired(self, now: datetime) -> bool:
        """Return true once the entry is older than its own TTL."""
        return self.age(now) > self.ttl


@dataclass(frozen=True)
class CachedValue(Generic[T]):
    """Result of a tagged cache read, so callers can tell live from stale."""

    data: T
    stale: bool
    age: float


@dataclass(frozen=True)
class CacheStats:
    """Size and resident keys of a cache."""

    size: int
    keys: tuple[str, ...]
