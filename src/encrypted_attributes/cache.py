"""Bounded LRU cache for recipient discovery results.

Key Features:
- Least-recently-used eviction with a configurable size bound
- Reads and writes both count as a use
- Runtime resizing, shrinking evicts immediately
- Thread-safe operations (re-entrant lock)
- Hit/miss/eviction statistics

Usage:
    from encrypted_attributes.cache import LRUCache

    cache = LRUCache(max_size=2)
    cache.put("a", 1)
    cache.put("b", 2)
    cache.get("a")        # touches "a"
    cache.put("c", 3)     # evicts "b"
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from collections.abc import Hashable
from dataclasses import dataclass
from threading import RLock
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIZE = 1024


# ============================================================================
# Configuration
# ============================================================================


@dataclass(frozen=True)
class CacheConfig:
    """Configuration for the LRU cache.

    Attributes:
        max_size: Maximum number of entries (0 disables storage)
    """

    max_size: int = DEFAULT_MAX_SIZE

    def __post_init__(self) -> None:
        _check_size(self.max_size)


def _check_size(max_size: int) -> None:
    if isinstance(max_size, bool) or not isinstance(max_size, int):
        raise ValueError(f"max_size must be an integer, got {type(max_size).__name__}")
    if max_size < 0:
        raise ValueError(f"max_size must be non-negative, got {max_size}")


# ============================================================================
# LRU Cache
# ============================================================================


class LRUCache:
    """Thread-safe LRU cache.

    Example:
        cache = LRUCache(max_size=100)
        cache.put("role:web", keys)

        cached = cache.get("role:web")
        if cached is not None:
            ...
    """

    def __init__(self, max_size: int | None = None, config: CacheConfig | None = None):
        """Initialize cache.

        Args:
            max_size: Maximum number of entries, overrides ``config``
            config: Cache configuration (uses defaults if None)

        Raises:
            ValueError: If the size is negative.
        """
        self.config = config or CacheConfig()
        if max_size is not None:
            _check_size(max_size)
        self._max_size = self.config.max_size if max_size is None else max_size
        self._cache: OrderedDict[Hashable, Any] = OrderedDict()
        self._lock = RLock()

        # Statistics
        self._hits: int = 0
        self._misses: int = 0
        self._evictions: int = 0

    @property
    def max_size(self) -> int:
        """Get the current size bound."""
        return self._max_size

    def get(self, key: Hashable, default: Any = None) -> Any:
        """Get a cached value and mark it most recently used.

        Args:
            key: Cache key
            default: Returned when the key is absent

        Returns:
            Cached value or ``default``
        """
        with self._lock:
            if key not in self._cache:
                self._misses += 1
                return default
            self._cache.move_to_end(key)
            self._hits += 1
            return self._cache[key]

    def put(self, key: Hashable, value: Any) -> Any:
        """Store a value and mark it most recently used.

        Returns:
            The stored value.
        """
        with self._lock:
            if self._max_size == 0:
                return value
            if key in self._cache:
                self._cache.move_to_end(key)
            self._cache[key] = value
            self._evict_if_needed()
            return value

    def set_max_size(self, max_size: int) -> None:
        """Change the size bound, evicting least recently used entries.

        Raises:
            ValueError: If the size is negative.
        """
        _check_size(max_size)
        with self._lock:
            self._max_size = max_size
            self._evict_if_needed()

    def remove(self, key: Hashable) -> bool:
        """Remove an entry.

        Returns:
            True if entry was removed, False if not found
        """
        with self._lock:
            if key in self._cache:
                del self._cache[key]
                return True
            return False

    def clear(self) -> None:
        """Clear all cache entries."""
        with self._lock:
            self._cache.clear()

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            total_requests = self._hits + self._misses
            hit_rate = self._hits / total_requests if total_requests > 0 else 0.0

            return {
                "entries": len(self._cache),
                "max_size": self._max_size,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "hit_rate": hit_rate,
            }

    def _evict_if_needed(self) -> None:
        while len(self._cache) > self._max_size:
            key = next(iter(self._cache))
            del self._cache[key]
            self._evictions += 1
            logger.debug("Evicted cache entry %r", key)

    def __contains__(self, key: Hashable) -> bool:
        # Membership does not count as a use
        with self._lock:
            return key in self._cache

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def __repr__(self) -> str:
        return f"LRUCache(max_size={self._max_size}, entries={len(self)})"
