# =============================================
# File: app/utils/qcache.py
# Purpose: In-process TTL cache for generated queries, keyed by (question, store)
# =============================================
from __future__ import annotations

import os
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from loguru import logger


@dataclass(frozen=True)
class CacheEntry:
    query: str
    created_at: float


def normalize_text(text: str) -> str:
    return " ".join((text or "").strip().lower().split())


def make_key(text: str, store_id: str) -> str:
    return f"{normalize_text(text)}:{(store_id or '').strip()}"


class QueryCache:
    """
    Entries are immutable: put() replaces, never mutates.
    Eviction order is insertion time (oldest first), not last access.
    """

    EVICT_FRACTION = 0.2

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = float(
            ttl_seconds if ttl_seconds is not None else os.getenv("QUERY_CACHE_TTL_SECONDS", "3600")
        )
        self.max_entries = int(
            max_entries if max_entries is not None else os.getenv("QUERY_CACHE_MAX_ENTRIES", "1000")
        )
        self._clock = clock
        self._store: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at > self.ttl_seconds

    def get(self, text: str, store_id: str) -> Optional[str]:
        key = make_key(text, store_id)
        now = self._clock()
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self._misses += 1
                return None
            if self._expired(entry, now):
                self._store.pop(key, None)
                self._misses += 1
                return None
            self._hits += 1
            return entry.query

    def put(self, text: str, store_id: str, query: str) -> None:
        key = make_key(text, store_id)
        with self._lock:
            # re-insert so insertion order tracks the newest write
            self._store.pop(key, None)
            self._store[key] = CacheEntry(query=query, created_at=self._clock())
            if len(self._store) > self.max_entries:
                self._evict_locked(reason="overflow")

    def maintain(self) -> int:
        """Explicit maintenance pass; returns the number of evicted entries."""
        with self._lock:
            return self._evict_locked(reason="maintenance")

    def _evict_locked(self, reason: str) -> int:
        now = self._clock()
        before = len(self._store)

        dead = [k for k, e in self._store.items() if self._expired(e, now)]
        for k in dead:
            self._store.pop(k, None)

        if len(self._store) > self.max_entries:
            n = len(self._store)
            to_remove = max(n - self.max_entries, int(n * self.EVICT_FRACTION))
            oldest = sorted(self._store.items(), key=lambda kv: kv[1].created_at)[:to_remove]
            for k, _ in oldest:
                self._store.pop(k, None)

        removed = before - len(self._store)
        if removed:
            self._evictions += removed
            logger.info(f"[qcache] evicted={removed} size={len(self._store)} reason={reason}")
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "size": len(self._store),
                "max_entries": self.max_entries,
                "ttl_seconds": self.ttl_seconds,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "hit_rate": (self._hits / lookups) if lookups else 0.0,
            }

    def clear(self) -> None:
        with self._lock:
            self._store.clear()
