# services/cache_service.py
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Protocol

from persona_engine.repositories.cache_repo import InsightCacheRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    computed_at: datetime


@dataclass(frozen=True)
class CachedValue:
    value: Any
    age_in_hours: float


class CacheStore(Protocol):
    def get(self, cache_key: str) -> Optional[CacheEntry]: ...

    def put(self, cache_key: str, entry: CacheEntry) -> None: ...


class MemoryCacheStore:
    """Process-local store. Readers never see a half-written entry."""

    def __init__(self):
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, cache_key: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(cache_key)

    def put(self, cache_key: str, entry: CacheEntry) -> None:
        with self._lock:
            self._entries[cache_key] = entry


class SqlCacheStore:
    """Stores entries in the insight_cache table, shared across instances."""

    def __init__(self, repo: InsightCacheRepository):
        self.repo = repo

    def get(self, cache_key: str) -> Optional[CacheEntry]:
        row = self.repo.get_entry(cache_key)
        if row is None:
            return None
        return CacheEntry(value=row.payload, computed_at=row.computed_at)

    def put(self, cache_key: str, entry: CacheEntry) -> None:
        self.repo.upsert_entry(cache_key, entry.value, entry.computed_at)


class FreshnessCache:
    """
    Memoizes derived aggregates behind an explicit staleness window.

    Age is measured from the stored computation time, so any caller can show
    "last updated" independently of the TTL that was used to read it.
    Concurrent recomputes of one key may both run; the last write wins.
    """

    def __init__(self, store: CacheStore, clock: Callable[[], datetime] = datetime.utcnow):
        self.store = store
        self.clock = clock

    def age_in_hours(self, computed_at: datetime) -> float:
        seconds = (self.clock() - computed_at).total_seconds()
        # Clock skew between writers must not produce a negative age
        return max(seconds, 0.0) / 3600.0

    def get_or_compute(self, cache_key: str, ttl_hours: float, compute_fn: Callable[[], Any]) -> CachedValue:
        entry = self.store.get(cache_key)
        if entry is not None:
            age = self.age_in_hours(entry.computed_at)
            if age < ttl_hours:
                return CachedValue(value=entry.value, age_in_hours=round(age, 2))
            logger.debug("Cache entry %s expired at %.2fh (ttl %.2fh)", cache_key, age, ttl_hours)

        value = compute_fn()
        try:
            self.store.put(cache_key, CacheEntry(value=value, computed_at=self.clock()))
        except RuntimeError as e:
            # The value is still good; the next reader recomputes it
            logger.error("Could not store cache entry %s: %s", cache_key, e)
        return CachedValue(value=value, age_in_hours=0.0)
