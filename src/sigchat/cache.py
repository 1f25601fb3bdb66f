"""In-memory TTL cache for sigchat.

Backs the process-local challenge store. Entries expire after a retention
period and the cache is bounded with LRU eviction, so abandoned challenges
cannot grow memory without limit.

All operations take the cache lock, which makes ``pop`` an atomic
get-and-remove: two concurrent callers can never both receive the same
entry.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from .metrics import metrics


@dataclass
class CacheEntry:
    """A single cache entry with expiration."""

    value: Any
    expires_at: float


@dataclass
class TTLCache:
    """Thread-safe TTL cache with LRU eviction.

    Args:
        name: Name of the cache (for metrics)
        default_ttl: Default TTL in seconds (0 = no expiration, rely on LRU)
        max_size: Maximum number of entries (LRU eviction when exceeded)
        clock: Time source in seconds; injectable for tests
    """

    name: str
    default_ttl: float = 3600.0
    max_size: int = 1000
    clock: Callable[[], float] = time.time
    _data: dict[str, CacheEntry] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)
    _access_order: list[str] = field(default_factory=list)

    def _is_expired(self, entry: CacheEntry) -> bool:
        return self.clock() > entry.expires_at

    def _remove(self, key: str) -> None:
        """Remove a key. Must be called with lock held."""
        self._data.pop(key, None)
        if key in self._access_order:
            self._access_order.remove(key)

    def _touch(self, key: str) -> None:
        if key in self._access_order:
            self._access_order.remove(key)
        self._access_order.append(key)

    def get(self, key: str) -> tuple[bool, Any]:
        """Get a value from the cache.

        Returns:
            (hit, value) tuple. If hit is False, value is None.
        """
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                metrics.record_cache_miss(self.name)
                return False, None

            if self._is_expired(entry):
                self._remove(key)
                metrics.record_cache_miss(self.name)
                return False, None

            self._touch(key)
            metrics.record_cache_hit(self.name)
            return True, entry.value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Set a value in the cache, replacing any existing entry.

        Args:
            key: Cache key
            value: Value to cache
            ttl: TTL in seconds (uses default_ttl if not specified, 0 = no expiration)
        """
        if ttl is None:
            ttl = self.default_ttl

        with self._lock:
            if key not in self._data and len(self._data) >= self.max_size:
                self._evict_expired()

            while key not in self._data and len(self._data) >= self.max_size and self._access_order:
                oldest_key = self._access_order.pop(0)
                self._data.pop(oldest_key, None)

            expires_at = self.clock() + ttl if ttl > 0 else float("inf")
            self._data[key] = CacheEntry(value=value, expires_at=expires_at)
            self._touch(key)

    def pop(self, key: str, predicate: Callable[[Any], bool] | None = None) -> tuple[bool, Any]:
        """Atomically remove and return a value.

        Args:
            key: Cache key
            predicate: If given, the entry is only removed when
                ``predicate(value)`` is true.

        Returns:
            (hit, value) tuple. Expired entries are discarded and count as a miss.
        """
        with self._lock:
            entry = self._data.get(key)
            if entry is None or self._is_expired(entry):
                if entry is not None:
                    self._remove(key)
                metrics.record_cache_miss(self.name)
                return False, None

            if predicate is not None and not predicate(entry.value):
                metrics.record_cache_miss(self.name)
                return False, None

            self._remove(key)
            metrics.record_cache_hit(self.name)
            return True, entry.value

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def _evict_expired(self) -> None:
        """Evict all expired entries. Must be called with lock held."""
        now = self.clock()
        expired_keys = [k for k, v in self._data.items() if v.expires_at < now]
        for key in expired_keys:
            self._remove(key)

    def stats(self) -> dict:
        """Get cache statistics."""
        with self._lock:
            return {
                "size": len(self._data),
                "max_size": self.max_size,
                "ttl_seconds": self.default_ttl,
            }
