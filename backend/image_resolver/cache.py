"""
Image Cache

In-memory cache of resolved image payloads with:
- Fixed freshness window (5 minutes by default)
- Maximum entry count with oldest-first eviction
- Whole-entry writes under a lock
"""

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Optional

from .payload import ImagePayload

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 5 * 60
DEFAULT_MAX_ENTRIES = 100


@dataclass(frozen=True)
class CacheEntry:
    """A cached payload and when it was stored."""
    key: str
    payload: ImagePayload
    created_at: float


class ImageCache:
    """
    Bounded, time-expiring payload store keyed by normalized reference.

    One instance is owned by the caller and handed to every loader that
    shares it.
    """

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = Lock()
        self._hits = 0
        self._misses = 0

    def _is_fresh(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at <= self.ttl_seconds

    def get(self, key: str) -> Optional[ImagePayload]:
        """Return the payload if cached and fresh, else None."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None

            if not self._is_fresh(entry, self._clock()):
                del self._entries[key]
                self._misses += 1
                logger.debug(f"[ImageCache] Expired: {key[:50]}...")
                return None

            self._hits += 1
            return entry.payload

    def put(self, key: str, payload: ImagePayload) -> None:
        """Store a payload, evicting the oldest entry when over capacity."""
        with self._lock:
            self._entries[key] = CacheEntry(key=key, payload=payload, created_at=self._clock())

            while len(self._entries) > self.max_entries:
                oldest = min(self._entries, key=lambda k: self._entries[k].created_at)
                del self._entries[oldest]
                logger.debug(f"[ImageCache] Evicted oldest: {oldest[:50]}...")

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def cleanup_expired(self) -> int:
        """
        Remove all expired entries.

        Returns:
            Number of entries removed.
        """
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if not self._is_fresh(e, now)]
            for key in expired:
                del self._entries[key]

        if expired:
            logger.info(f"[ImageCache] Cleaned up {len(expired)} expired entries")
        return len(expired)

    def clear(self) -> int:
        """Drop everything, e.g. under memory pressure."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info(f"[ImageCache] Cleared all {count} entries")
        return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and self._is_fresh(entry, self._clock())

    def get_stats(self) -> dict:
        """Get cache statistics."""
        with self._lock:
            total_size = sum(e.payload.size for e in self._entries.values())
            return {
                "total_entries": len(self._entries),
                "max_entries": self.max_entries,
                "total_size_bytes": total_size,
                "total_size_mb": round(total_size / (1024 * 1024), 2),
                "ttl_seconds": self.ttl_seconds,
                "hits": self._hits,
                "misses": self._misses,
            }
