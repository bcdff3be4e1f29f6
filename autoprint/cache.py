"""
In-memory TTL cache with a stale-data fallback window.

Entries are "fresh" until their TTL expires, then remain readable as
"stale" through get_stale() until the stale window also expires. Stale
reads are used for graceful degradation when the remote API is failing.
"""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 1000


@dataclass
class CacheEntry:
    key: str
    value: Any
    created_at: float
    expires_at: float
    stale_expires_at: float


class TTLCache:
    """
    Bounded TTL cache with FIFO eviction.

    Size never exceeds max_entries: inserting into a full cache evicts the
    single oldest entry first.
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES, clock: Callable[[], float] = time.monotonic):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self._clock = clock
        self._entries: 'OrderedDict[str, CacheEntry]' = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.stale_hits = 0
        self.evictions = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def set(self, key: str, value: Any, fresh_ttl: float = 300, stale_ttl: float = 3600):
        """
        Store a value.

        Args:
            key: Cache key
            value: Value to cache
            fresh_ttl: Seconds the value is served by get()
            stale_ttl: Seconds the value is served by get_stale(), measured from now
        """
        now = self._clock()
        entry = CacheEntry(
            key=key,
            value=value,
            created_at=now,
            expires_at=now + fresh_ttl,
            stale_expires_at=now + max(stale_ttl, fresh_ttl),
        )

        with self._lock:
            # Re-setting a key counts as a new insertion for FIFO order
            self._entries.pop(key, None)
            while len(self._entries) >= self.max_entries:
                oldest_key, _ = self._entries.popitem(last=False)
                self.evictions += 1
                logger.debug(f"Cache evicted oldest entry: {oldest_key} (size limit: {self.max_entries})")
            self._entries[key] = entry
            size = len(self._entries)

        logger.debug(
            f"Cache set: {key} (TTL: {fresh_ttl}s, Stale TTL: {stale_ttl}s, Size: {size}/{self.max_entries})"
        )

    def _fresh_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None or self._clock() >= entry.expires_at:
            return None
        return entry

    def get(self, key: str) -> Optional[Any]:
        """Return the value if it is still fresh, otherwise None."""
        with self._lock:
            entry = self._fresh_entry(key)
            if entry is None:
                self.misses += 1
                if key in self._entries:
                    logger.debug(f"Cache expired: {key}")
                return None
            self.hits += 1
            logger.debug(f"Cache hit: {key}")
            return entry.value

    def get_stale(self, key: str) -> Optional[Any]:
        """
        Return the value even if it is past its fresh TTL.

        Entries past the stale window are purged and reported as a miss.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() > entry.stale_expires_at:
                del self._entries[key]
                logger.info(f"Stale cache expired: {key}")
                return None
            self.stale_hits += 1
            return entry.value

    def has(self, key: str) -> bool:
        with self._lock:
            return self._fresh_entry(key) is not None

    def delete(self, key: str) -> bool:
        with self._lock:
            deleted = self._entries.pop(key, None) is not None
        if deleted:
            logger.debug(f"Cache deleted: {key}")
        return deleted

    def clear(self):
        with self._lock:
            size = len(self._entries)
            self._entries.clear()
        logger.info(f"Cache cleared: {size} items removed")

    def cleanup(self) -> int:
        """Remove every entry whose stale window has expired."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if now > entry.stale_expires_at]
            for key in expired:
                del self._entries[key]

        if expired:
            logger.info(f"Cache cleanup: {len(expired)} expired items removed")
        return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        now = self._clock()
        with self._lock:
            total = len(self._entries)
            fresh = sum(1 for entry in self._entries.values() if now < entry.expires_at)
            hits, misses = self.hits, self.misses
            stale_hits, evictions = self.stale_hits, self.evictions

        lookups = hits + misses
        return {
            'total': total,
            'max_size': self.max_entries,
            'fresh': fresh,
            'stale': total - fresh,
            'utilization_percent': round(total / self.max_entries * 100),
            'hits': hits,
            'misses': misses,
            'stale_hits': stale_hits,
            'evictions': evictions,
            'hit_rate_percent': round(hits / lookups * 100) if lookups else 0,
        }
