from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from loguru import logger

from micro_x_chat.completions.types import CompletionItem

DEFAULT_MAX_SIZE = 1000
DEFAULT_TTL_SECONDS = 300.0


@dataclass
class CacheEntry:
    items: list[CompletionItem]
    created_at: float
    last_accessed: float
    ttl: float | None = None
    access_count: int = 0

    def is_expired(self, now: float, default_ttl: float) -> bool:
        ttl = self.ttl if self.ttl is not None else default_ttl
        return now - self.created_at > ttl


@dataclass(frozen=True)
class CacheStats:
    size: int
    max_size: int
    hits: int
    misses: int
    hit_rate: float
    total_access_count: int


@dataclass
class CompletionCache:
    """Bounded LRU cache of completion lists with per-entry expiry.

    ``clock`` returns seconds on a monotonic scale; tests pass a fake one.
    """

    max_size: int = DEFAULT_MAX_SIZE
    default_ttl: float = DEFAULT_TTL_SECONDS
    clock: Callable[[], float] = time.monotonic
    _entries: dict[str, CacheEntry] = field(default_factory=dict, init=False, repr=False)
    _hits: int = field(default=0, init=False)
    _misses: int = field(default=0, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __len__(self) -> int:
        return len(self._entries)

    def insert(self, key: str, items: list[CompletionItem], *, ttl: float | None = None) -> None:
        with self._lock:
            now = self.clock()
            self._clean_expired(now)
            if key not in self._entries:
                while self._entries and len(self._entries) >= self.max_size:
                    self._evict_lru()
            if self.max_size <= 0:
                return
            self._entries[key] = CacheEntry(list(items), created_at=now, last_accessed=now, ttl=ttl)

    def get(self, key: str) -> list[CompletionItem] | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            now = self.clock()
            if entry.is_expired(now, self.default_ttl):
                logger.trace(f"Completion cache entry expired: {key}")
                del self._entries[key]
                self._misses += 1
                return None
            self._hits += 1
            entry.access_count += 1
            entry.last_accessed = now
            return list(entry.items)

    def remove(self, key: str) -> list[CompletionItem] | None:
        with self._lock:
            entry = self._entries.pop(key, None)
        return entry.items if entry is not None else None

    def clear(self) -> None:
        with self._lock:
            logger.debug(f"Clearing completion cache ({len(self._entries)} entries)")
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def hit_rate(self) -> float:
        total = self._hits + self._misses
        return self._hits / total if total else 0.0

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                size=len(self._entries),
                max_size=self.max_size,
                hits=self._hits,
                misses=self._misses,
                hit_rate=self.hit_rate(),
                total_access_count=sum(e.access_count for e in self._entries.values()),
            )

    def set_max_size(self, max_size: int) -> None:
        with self._lock:
            self.max_size = max(0, max_size)
            while len(self._entries) > self.max_size:
                self._evict_lru()

    def set_default_ttl(self, ttl: float) -> None:
        self.default_ttl = ttl

    def invalidate_pattern(self, pattern: str) -> int:
        with self._lock:
            keys = [key for key in self._entries if pattern in key]
            for key in keys:
                del self._entries[key]
        if keys:
            logger.debug(f"Invalidated {len(keys)} completion cache entries matching {pattern!r}")
        return len(keys)

    def _clean_expired(self, now: float) -> None:
        expired = [k for k, e in self._entries.items() if e.is_expired(now, self.default_ttl)]
        for key in expired:
            del self._entries[key]

    def _evict_lru(self) -> None:
        # dict order breaks ties between equal access times
        lru_key = min(self._entries, key=lambda k: self._entries[k].last_accessed)
        del self._entries[lru_key]
        logger.trace(f"Evicted LRU completion cache entry: {lru_key}")
