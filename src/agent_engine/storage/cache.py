"""Bounded TTL cache used for idempotent tool results."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import cachetools

EVICTION_FRACTION = 0.1


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    size: int
    hit_rate: float


class _BatchEvictingTTLCache(cachetools.TTLCache):
    """Evicts the least recently used tenth of the entries (at least one) once full."""

    def popitem(self) -> tuple[Any, Any]:
        evicted = super().popitem()
        # Called while the cache is full, so len(self) + 1 is its size before eviction.
        for _ in range(max(1, int((len(self) + 1) * EVICTION_FRACTION)) - 1):
            super().popitem()
        return evicted


class TTLCache:
    """Thread-safe key/value cache with a shared time-to-live and hit/miss stats."""

    def __init__(
        self,
        *,
        ttl_s: float = 300.0,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.ttl_s = ttl_s
        self.max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        self._entries = self._new_store()
        self._hits = 0
        self._misses = 0

    def _new_store(self) -> _BatchEvictingTTLCache:
        return _BatchEvictingTTLCache(maxsize=self.max_entries, ttl=self.ttl_s, timer=self._clock)

    def get(self, key: str) -> Any | None:
        with self._lock:
            value = self._entries.get(key)
            if value is None:
                self._misses += 1
            else:
                self._hits += 1
            return value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._entries[key] = value

    def has(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries = self._new_store()
            self._hits = 0
            self._misses = 0

    def invalidate_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [key for key in self._entries if key.startswith(prefix)]
            for key in keys:
                self._entries.pop(key, None)
            return len(keys)

    def get_or_compute(self, key: str, compute: Callable[[], Any]) -> Any:
        cached = self.get(key)
        if cached is not None:
            return cached
        value = compute()
        self.set(key, value)
        return value

    def stats(self) -> CacheStats:
        with self._lock:
            total = self._hits + self._misses
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                size=len(self._entries),
                hit_rate=(self._hits / total) if total else 0.0,
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
