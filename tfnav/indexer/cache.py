"""In-memory parse cache keyed by file identity (path, mtime, size)."""

import copy
import logging
import os
import sys
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from .models import ParseResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 1000
DEFAULT_MAX_AGE_SECONDS = 10 * 60


@dataclass
class CacheEntry:
    """A cached parse result and the file identity it was computed for."""

    result: ParseResult
    mtime_ns: int
    size: int
    cached_at: float
    hit_count: int = 0


@dataclass
class CacheStats:
    """Snapshot of cache statistics."""

    total_entries: int
    total_hits: int
    total_misses: int
    hit_rate: float  # percentage, 0-100
    memory_usage_bytes: int
    oldest_entry: Optional[float]
    newest_entry: Optional[float]


class ParseCache:
    """Cache of ParseResults.

    A hit requires the absolute path, modification time and size to all match
    the values recorded when the entry was stored. Entries older than
    ``max_age_seconds`` are treated as misses regardless. Results are deep
    copied going in and coming out so callers may mutate what they receive.
    """

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the cache.

        Args:
            max_entries: Capacity bound, enforced on insert
            max_age_seconds: Entries older than this are misses
            clock: Wall-clock source, injectable for tests
        """
        self.max_entries = max_entries
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._hits = 0
        self._misses = 0

    @staticmethod
    def _key(file_path: str) -> str:
        return os.path.abspath(file_path)

    @staticmethod
    def _stat(file_path: str) -> Optional[Tuple[int, int]]:
        try:
            st = os.stat(file_path)
        except OSError:
            return None
        return st.st_mtime_ns, st.st_size

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.cached_at > self.max_age_seconds

    def get(self, file_path: str) -> Optional[ParseResult]:
        """Return a copy of the cached result for a file, or None on a miss.

        Stale, expired and vanished-file entries are removed as a side effect.
        """
        key = self._key(file_path)
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        identity = self._stat(key)
        if identity is None or identity != (entry.mtime_ns, entry.size):
            logger.debug(f"Cache entry stale for {key}")
            del self._entries[key]
            self._misses += 1
            return None

        if self._is_expired(entry, self._clock()):
            logger.debug(f"Cache entry expired for {key}")
            del self._entries[key]
            self._misses += 1
            return None

        entry.hit_count += 1
        self._hits += 1
        logger.debug(f"Cache hit for {key}")
        return copy.deepcopy(entry.result)

    def set(self, file_path: str, result: ParseResult) -> None:
        """Store a copy of ``result`` for a file.

        Files that cannot be stat'ed are not cached.
        """
        key = self._key(file_path)
        identity = self._stat(key)
        if identity is None:
            logger.debug(f"Not caching {key}: file cannot be stat'ed")
            return

        now = self._clock()
        self._entries[key] = CacheEntry(
            result=copy.deepcopy(result),
            mtime_ns=identity[0],
            size=identity[1],
            cached_at=now,
        )
        self._enforce_capacity(now)

    def _enforce_capacity(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if self._is_expired(entry, now)]
        for key in expired:
            del self._entries[key]

        overflow = len(self._entries) - self.max_entries
        if overflow > 0:
            oldest = sorted(self._entries, key=lambda k: self._entries[k].cached_at)[:overflow]
            for key in oldest:
                del self._entries[key]
            logger.debug(f"Evicted {overflow} cache entries over capacity")

    def evict(self, file_path: str) -> bool:
        """Remove the cached result for one file.

        Called before a changed file is reparsed so a stale result with a
        matching mtime and size is never served.

        Returns:
            True if an entry was present
        """
        return self._entries.pop(self._key(file_path), None) is not None

    def clear(self) -> None:
        """Drop every entry and reset the hit and miss counters."""
        self._entries.clear()
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, file_path: str) -> bool:
        return self._key(file_path) in self._entries

    def get_stats(self) -> CacheStats:
        """Get cache statistics.

        Memory usage is a shallow estimate over the stored results.
        """
        lookups = self._hits + self._misses
        cached_at = [entry.cached_at for entry in self._entries.values()]

        memory = 0
        for key, entry in self._entries.items():
            memory += sys.getsizeof(key) + sys.getsizeof(entry)
            memory += sum(sys.getsizeof(block) for block in entry.result.blocks)
            memory += sum(sys.getsizeof(error) for error in entry.result.errors)

        return CacheStats(
            total_entries=len(self._entries),
            total_hits=self._hits,
            total_misses=self._misses,
            hit_rate=(self._hits / lookups) * 100 if lookups else 0.0,
            memory_usage_bytes=memory,
            oldest_entry=min(cached_at) if cached_at else None,
            newest_entry=max(cached_at) if cached_at else None,
        )
