"""
cache/store.py -- In-memory TTL cache for memoized reads.

Avoids redundant backend calls by keeping recently loaded payloads (user
profiles, report lists) in process memory with a per-entry TTL (default
5 minutes) and a hard cap on the number of entries.

Usage:
    cache = TTLCache()
    cache.set("user:42", profile)
    data = cache.get("user:42")            # returns the value or None
    data = await cache.get_or_set("reports:42", load_reports)
    cache.purge_expired()                  # the background sweep does this every minute

Expiry is enforced lazily on every read, so get()/has() are correct whether
or not the sweep has run. The sweep only reclaims memory.

Thread safety: every mutation happens under one RLock per instance. The
sweep runs on its own thread and FastAPI runs sync routes in a thread pool.

Layer rule: no imports from api/, auth/, audit/, or security/.
"""

from __future__ import annotations

import json
import logging
import sys
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Optional

from core.scheduler import RepeatingTimer

logger = logging.getLogger("prodreport.cache")

_DEFAULT_MAX_ITEMS = 1000
_DEFAULT_TTL = 5 * 60  # 5 minutes in seconds
_SWEEP_INTERVAL = 60
_ENTRY_OVERHEAD_BYTES = 24  # stored_at + ttl

_MISSING = object()


@dataclass
class CacheEntry:
    data: Any
    stored_at: float
    ttl: float

    def is_live(self, now: float) -> bool:
        return now - self.stored_at <= self.ttl


@dataclass
class CacheStats:
    hits: int
    misses: int
    hit_rate: float  # percentage, 0-100, two decimals
    total_items: int
    memory_usage_kb: int


class TTLCache:
    def __init__(
        self,
        max_items: int = _DEFAULT_MAX_ITEMS,
        default_ttl: float = _DEFAULT_TTL,
        sweep_interval: float = _SWEEP_INTERVAL,
        time_func: Callable[[], float] = time.time,
    ) -> None:
        if max_items < 1:
            raise ValueError("max_items must be at least 1")
        self.max_items = max_items
        self.default_ttl = default_ttl
        self.sweep_interval = sweep_interval
        self._time_func = time_func
        self._entries: dict[str, CacheEntry] = {}
        self._hits = 0
        self._misses = 0
        self._lock = threading.RLock()
        self._timer: Optional[RepeatingTimer] = None

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store value under key, replacing any existing entry.

        A falsy ttl (None or 0) falls back to the store default. When the
        store is full and key is new, the oldest entry is evicted first.
        """
        with self._lock:
            if key in self._entries:
                # Re-insert so insertion order tracks the new stored_at.
                del self._entries[key]
            elif len(self._entries) >= self.max_items:
                self._evict_oldest()
            self._entries[key] = CacheEntry(data=value, stored_at=self._time_func(), ttl=ttl or self.default_ttl)

    def get(self, key: str, default: Any = None) -> Any:
        """Return the live value for key, or default on a miss."""
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                self._misses += 1
                return default
            self._hits += 1
            return entry.data

    def has(self, key: str) -> bool:
        """Return True if key holds a live entry. Does not touch hit/miss counters."""
        with self._lock:
            return self._live_entry(key) is not None

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        """Drop every entry and reset the hit/miss counters."""
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    async def get_or_set(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
    ) -> Any:
        """Return the cached value for key, computing and storing it on a miss.

        factory is awaited at most once per call. If it raises, the exception
        propagates unchanged and nothing is stored.
        """
        cached = self.get(key, _MISSING)
        if cached is not _MISSING:
            return cached
        data = await factory()
        self.set(key, data, ttl)
        return data

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_stats(self) -> CacheStats:
        with self._lock:
            total = self._hits + self._misses
            hit_rate = (self._hits / total) * 100 if total > 0 else 0.0
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                hit_rate=round(hit_rate, 2),
                total_items=len(self._entries),
                memory_usage_kb=self._memory_usage_kb(),
            )

    def get_keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def get_size(self) -> int:
        with self._lock:
            return len(self._entries)

    # ------------------------------------------------------------------
    # Namespaced helpers
    # ------------------------------------------------------------------

    def set_user(self, user_id: str, user_data: Any, ttl: Optional[float] = None) -> None:
        self.set(f"user:{user_id}", user_data, ttl)

    def get_user(self, user_id: str) -> Any:
        return self.get(f"user:{user_id}")

    def set_reports(self, user_id: str, reports: list, ttl: Optional[float] = None) -> None:
        self.set(f"reports:{user_id}", reports, ttl)

    def get_reports(self, user_id: str) -> Optional[list]:
        return self.get(f"reports:{user_id}")

    def invalidate_user(self, user_id: str) -> int:
        """Delete every entry cached for user_id. Returns the number removed."""
        prefixes = (f"user:{user_id}", f"reports:{user_id}")
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefixes)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number of entries removed."""
        with self._lock:
            now = self._time_func()
            expired = [key for key, entry in self._entries.items() if not entry.is_live(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.info("Cache cleanup: removed %d expired items", len(expired))
        return len(expired)

    def start_sweep(self) -> None:
        """Start the background purge timer (idempotent)."""
        if self._timer is None:
            self._timer = RepeatingTimer(self.sweep_interval, self.purge_expired, name="cache-sweep")
        self._timer.start()

    def stop_sweep(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def close(self) -> None:
        self.stop_sweep()

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _live_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_live(self._time_func()):
            del self._entries[key]
            return None
        return entry

    def _evict_oldest(self) -> None:
        # min() keeps the first minimum it sees, so insertion order breaks ties.
        oldest = min(self._entries, key=lambda k: self._entries[k].stored_at)
        del self._entries[oldest]
        logger.debug("Cache full (%d items): evicted %s", self.max_items, oldest)

    def _memory_usage_kb(self) -> int:
        size = 0
        for key, entry in self._entries.items():
            size += len(key) * 2
            size += _payload_size(entry.data) * 2
            size += _ENTRY_OVERHEAD_BYTES
        return round(size / 1024)


def _payload_size(data: Any) -> int:
    """Rough serialized size of a payload. Never raises."""
    try:
        return len(json.dumps(data, default=str))
    except (TypeError, ValueError):
        # Self-referencing structures cannot be serialized.
        return sys.getsizeof(data)
