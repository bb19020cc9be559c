"""
Bounded in-memory cache with per-entry time-to-live.

Constructed once by whoever owns its lifetime (the app lifespan, a CLI
command, a test) and passed into the components that read through it.
There is no module-level instance.
"""

from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Generic, Hashable, Optional, Tuple, TypeVar


V = TypeVar("V")


class TTLCache(Generic[V]):
    """
    LRU-ordered mapping with a size cap and expiry.

    Entries expire ``ttl_seconds`` after they were set. When the cache is
    full, setting a new key evicts the least recently used entry.

    Args:
        max_size: Maximum number of live entries (>= 1)
        ttl_seconds: Entry lifetime; 0 disables caching entirely
    """

    def __init__(self, max_size: int = 256, ttl_seconds: float = 300):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must not be negative")
        self.max_size = max_size
        self.ttl = timedelta(seconds=ttl_seconds)
        self._entries: "OrderedDict[Hashable, Tuple[datetime, V]]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def get(self, key: Hashable, default: Optional[V] = None) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return default

        expires_at, value = entry
        if self._now() >= expires_at:
            del self._entries[key]
            self.misses += 1
            return default

        self._entries.move_to_end(key)
        self.hits += 1
        return value

    def set(self, key: Hashable, value: V) -> None:
        if not self.ttl:
            return
        self._entries[key] = (self._now() + self.ttl, value)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)

    def get_or_set(self, key: Hashable, factory: Callable[[], V]) -> V:
        """Return the cached value, computing and storing it on a miss."""
        value = self.get(key)
        if value is None:
            value = factory()
            self.set(key, value)
        return value

    def invalidate(self, key: Hashable) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        now = self._now()
        expired = [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __contains__(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and self._now() < entry[0]

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict:
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl.total_seconds(),
            "hits": self.hits,
            "misses": self.misses,
        }
