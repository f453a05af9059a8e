"""Thread-safe in-memory cache with per-entry TTL."""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Hashable, Optional, TypeVar

from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="cache")

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    """Stored value plus the clock reading it was written at."""
    value: T
    stored_at: float
    ttl: float

    @property
    def expires_at(self) -> float:
        return self.stored_at + self.ttl

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


def make_key(*parts: Any) -> str:
    """Join key parts into a flat string key, e.g. ("weather", "1,2") -> "weather:1,2"."""
    return ":".join(str(p) for p in parts)


class TTLCache(Generic[T]):
    """Key/value store where every entry expires `ttl` seconds after it was set.

    `get` expires entries lazily, so correctness never depends on `cleanup()`
    running; the periodic sweep only bounds memory for keys nobody reads again.
    There is no LRU or size bound.
    """

    def __init__(self, default_ttl_seconds: float = 600.0, *, clock: Callable[[], float] = time.monotonic) -> None:
        """Initialize the cache with a default TTL (seconds) and an injectable clock."""
        logger.debug("Initializing TTLCache", extra={"default_ttl_seconds": default_ttl_seconds})
        self.default_ttl = default_ttl_seconds
        self._clock = clock
        self._entries: Dict[Hashable, CacheEntry[T]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Optional[T]:
        """Return the cached value, or None if missing or expired (evicting it)."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return None
            return entry.value

    def has(self, key: Hashable) -> bool:
        """Return True if the key holds a live entry."""
        return self.get(key) is not None

    def set(self, key: Hashable, value: T, ttl_seconds: Optional[float] = None) -> None:
        """Store a value, replacing any existing entry and restarting its clock."""
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._entries[key] = CacheEntry(value=value, stored_at=self._clock(), ttl=ttl)

    def delete(self, key: Hashable) -> None:
        """Remove a key if present."""
        with self._lock:
            self._entries.pop(key, None)

    def cleanup(self) -> int:
        """Drop every expired entry and return how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("Swept expired cache entries", extra={"removed": len(expired)})
        return len(expired)

    def clear(self) -> None:
        """Remove every entry."""
        with self._lock:
            self._entries.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict:
        """Return size, default TTL and current keys for operational visibility."""
        with self._lock:
            return {
                "size": len(self._entries),
                "default_ttl": self.default_ttl,
                "keys": [str(k) for k in self._entries],
            }
