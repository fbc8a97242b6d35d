from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

log = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)) or default)
    except ValueError:
        return default


IMAGE_CACHE_TTL_SECONDS = _env_int("IMAGE_CACHE_TTL_SECONDS", 3600)
IMAGE_CACHE_MAX_ENTRIES = _env_int("IMAGE_CACHE_MAX_ENTRIES", 1000)
PERSONALIZE_CACHE_TTL_SECONDS = _env_int("PERSONALIZE_CACHE_TTL_SECONDS", 7200)
PERSONALIZE_CACHE_MAX_ENTRIES = _env_int("PERSONALIZE_CACHE_MAX_ENTRIES", 500)
EVICT_FRACTION = 0.1


@dataclass(frozen=True)
class CacheEntry:
    artifact: str
    generator_input: str
    created_at: float


class GenerationCache:
    """In-memory key -> CacheEntry store with TTL and a size bound.

    Expired entries are dropped when read. When an insert pushes the size past
    ``max_entries`` the oldest-created batch (10% of the bound) is evicted at once.
    """

    def __init__(
        self,
        ttl_seconds: float = IMAGE_CACHE_TTL_SECONDS,
        max_entries: int = IMAGE_CACHE_MAX_ENTRIES,
        evict_fraction: float = EVICT_FRACTION,
        clock: Callable[[], float] = time.time,
        name: str = "images",
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.evict_batch = max(1, int(max_entries * evict_fraction))
        self.name = name
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def _expired(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.created_at > self.ttl_seconds

    def get(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._expired(entry):
            self._entries.pop(key, None)
            log.debug("cache.%s: expired key=%s", self.name, key[:12])
            return None
        return entry

    def set(self, key: str, entry: CacheEntry) -> None:
        self._entries[key] = entry
        if len(self._entries) > self.max_entries:
            self._evict()

    def put(self, key: str, artifact: str, generator_input: str = "") -> CacheEntry:
        entry = CacheEntry(artifact=artifact, generator_input=generator_input, created_at=self._clock())
        self.set(key, entry)
        return entry

    def _evict(self) -> None:
        overflow = len(self._entries) - self.max_entries
        count = max(self.evict_batch, overflow)
        oldest = sorted(self._entries, key=lambda k: self._entries[k].created_at)[:count]
        for k in oldest:
            self._entries.pop(k, None)
        log.info("cache.%s: evicted=%d size=%d", self.name, len(oldest), len(self._entries))

    def stats(self) -> Dict[str, Optional[float]]:
        if not self._entries:
            return {"size": 0, "oldestEntryTimestamp": None}
        oldest = min(e.created_at for e in self._entries.values())
        return {"size": len(self._entries), "oldestEntryTimestamp": oldest}

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
