"""Per-process cache with TTL-based expiry and explicit invalidation."""

import time
from typing import Callable, Dict, Generic, Optional, Tuple, TypeVar

from wardrobe_ai.config import settings

V = TypeVar("V")


class TTLCache(Generic[V]):
    """Maps a stable key to a value for ``ttl_seconds``.

    Used where a flow should only do expensive work once per key, e.g. the
    uploaded composite grid for a given item selection.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, V]] = {}

    def get(self, key: str) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if self._clock() - stored_at > self._ttl_seconds:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: V) -> None:
        self._entries[key] = (self._clock(), value)

    def invalidate(self, key: Optional[str] = None) -> None:
        """Drop one key, or everything when ``key`` is None."""
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)

    def cleanup_expired(self) -> int:
        """Remove expired entries. Returns count of removed entries."""
        now = self._clock()
        expired = [k for k, (stored_at, _) in self._entries.items() if now - stored_at > self._ttl_seconds]
        for key in expired:
            del self._entries[key]
        return len(expired)


# Global instance: uploaded composite storage keys by selection key
composite_cache: TTLCache[str] = TTLCache(ttl_seconds=settings.composite_cache_ttl_seconds)
