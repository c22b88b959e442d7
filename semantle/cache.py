"""
In-memory TTL cache for the word-of-the-day lookup and the ranking
service's reference scores. Both change rarely and are read on every
room create/join, so a process-local cache is enough.
"""

import time
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class MemoryCache:
    """Thread-safe in-memory cache with TTL support"""

    def __init__(self):
        self._cache: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._stats = {'hits': 0, 'misses': 0, 'sets': 0, 'evictions': 0}

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._stats['misses'] += 1
                return None
            if time.time() > entry.expires_at:
                del self._cache[key]
                self._stats['misses'] += 1
                self._stats['evictions'] += 1
                return None
            self._stats['hits'] += 1
            return entry.value

    def set(self, key: str, value: Any, ttl_seconds: float = 3600) -> None:
        with self._lock:
            self._cache[key] = CacheEntry(value=value, expires_at=time.time() + ttl_seconds)
            self._stats['sets'] += 1

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._stats['evictions'] += len(self._cache)
            self._cache.clear()

    def cleanup_expired(self) -> int:
        """Remove all expired entries, return count of removed entries"""
        with self._lock:
            now = time.time()
            expired = [k for k, e in self._cache.items() if now > e.expires_at]
            for k in expired:
                del self._cache[k]
            self._stats['evictions'] += len(expired)
            return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._stats['hits'] + self._stats['misses']
            return {
                **self._stats,
                'total_requests': total,
                'hit_rate_percent': round(self._stats['hits'] / total * 100, 2) if total else 0,
                'cache_size': len(self._cache),
            }


_cache = MemoryCache()


def get_cache() -> MemoryCache:
    return _cache


def cache_daily_word(date: str, word: str, ttl_minutes: int = 10) -> None:
    # short TTL: an admin may replace the word for a date
    _cache.set(f"daily_word:{date}", word, ttl_minutes * 60)


def get_cached_daily_word(date: str) -> Optional[str]:
    return _cache.get(f"daily_word:{date}")


def invalidate_daily_word(date: str) -> None:
    _cache.delete(f"daily_word:{date}")


def cache_reference_scores(date: str, scores: dict, ttl_hours: int = 24) -> None:
    _cache.set(f"reference_scores:{date}", scores, ttl_hours * 3600)


def get_cached_reference_scores(date: str) -> Optional[dict]:
    return _cache.get(f"reference_scores:{date}")
