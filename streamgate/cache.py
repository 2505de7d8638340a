"""In-memory metadata cache.

Entries expire lazily: a stale entry reads as a miss but stays in the map
until :meth:`MetadataCache.sweep` or capacity eviction removes it. Eviction
approximates LFU: when an insert pushes the cache over capacity the bottom
decile by access count goes, regardless of age.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    video_id: str
    metadata: Dict[str, Any]
    inserted_at: float
    access_count: int = 0


class MetadataCache:
    def __init__(
        self,
        capacity: int = 1000,
        ttl: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, video_id: object) -> bool:
        return video_id in self._entries

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.inserted_at >= self.ttl

    def get(self, video_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._entries.get(video_id)
            if entry is None or self._expired(entry, self._clock()):
                self.misses += 1
                return None
            entry.access_count += 1
            self.hits += 1
            return entry.metadata

    def peek(self, video_id: str) -> Optional[CacheEntry]:
        """Return the raw entry without touching counters or expiry."""
        with self._lock:
            return self._entries.get(video_id)

    def put(self, video_id: str, metadata: Dict[str, Any]) -> None:
        with self._lock:
            self._entries.pop(video_id, None)
            self._entries[video_id] = CacheEntry(
                video_id=video_id,
                metadata=metadata,
                inserted_at=self._clock(),
            )
            if len(self._entries) > self.capacity:
                self._evict(keep=video_id)

    def _evict(self, keep: str) -> None:
        count = max(1, len(self._entries) // 10)
        # sorted() is stable, so equal counts fall back to insertion order.
        candidates = sorted(
            (entry for key, entry in self._entries.items() if key != keep),
            key=lambda entry: entry.access_count,
        )
        for entry in candidates[:count]:
            del self._entries[entry.video_id]
        self.evictions += min(count, len(candidates))
        logger.debug("Evicted %d cache entries (size=%d)", min(count, len(candidates)), len(self._entries))

    def sweep(self) -> int:
        with self._lock:
            now = self._clock()
            stale = [key for key, entry in self._entries.items() if self._expired(entry, now)]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug("Swept %d expired cache entries", len(stale))
        return len(stale)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "size": len(self._entries),
                "capacity": self.capacity,
                "ttl": self.ttl,
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
            }
