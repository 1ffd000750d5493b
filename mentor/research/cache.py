# mentor/research/cache.py

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from mentor.research.models import ResearchResult

CacheKey = Tuple[str, str]


@dataclass(frozen=True)
class CacheEntry:
    result: ResearchResult
    stored_at: float


def normalize_query(query: str) -> str:
    return " ".join((query or "").split())


class ResearchCache:
    """
    Completed research results keyed by (normalized query, system prompt).

    - Entries older than ttl_seconds are misses.
    - Past capacity the oldest-INSERTED key is evicted (not LRU). Storing an
      existing key again refreshes its value but keeps its position.
    - Writes take a lock; reads are plain dict lookups.
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        capacity: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.capacity = max(1, capacity)
        self._clock = clock
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._lock = threading.Lock()

    @staticmethod
    def make_key(query: str, system_prompt: str) -> CacheKey:
        return (normalize_query(query), system_prompt or "")

    def get(self, key: CacheKey) -> Optional[ResearchResult]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.stored_at >= self.ttl_seconds:
            return None
        return entry.result

    def set(self, key: CacheKey, result: ResearchResult) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(result=result, stored_at=self._clock())
            while len(self._entries) > self.capacity:
                oldest = next(iter(self._entries))
                del self._entries[oldest]

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
