"""In-process TTL cache for event read paths.

Entries expire independently. When the cache is full the oldest *inserted*
entry is evicted; reads do not refresh an entry's position. Writes to the
event store invalidate by key substring. Every invalidation also bumps a
generation counter; a reader that captured the generation before going to
the store passes it back to `set`, and the value is dropped if an
invalidation happened in between.
"""

import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable

from keepsake.config import Settings
from keepsake.metrics import query_cache_evictions_total, query_cache_lookups_total

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass
class _Entry:
    value: Any
    stored_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.stored_at >= self.ttl


def make_key(prefix: str, params: dict[str, Any] | None = None) -> str:
    """Deterministic key: prefix plus sorted-key JSON of the parameters."""
    if not params:
        return prefix
    return f"{prefix}:{json.dumps(params, sort_keys=True, default=str, separators=(',', ':'))}"


class QueryCache:
    def __init__(
        self,
        max_entries: int = 200,
        default_ttl: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._max_entries = max_entries
        self._default_ttl = default_ttl
        self._clock = clock
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._generation = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def __contains__(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expired(self._clock()):
                del self._entries[key]
                entry = None
        if entry is None:
            query_cache_lookups_total.labels(result="miss").inc()
            return default
        query_cache_lookups_total.labels(result="hit").inc()
        return entry.value

    def set(self, key: str, value: Any, ttl: float | None = None, generation: int | None = None) -> None:
        ttl = self._default_ttl if ttl is None else ttl
        if ttl <= 0:
            return
        with self._lock:
            if generation is not None and generation != self._generation:
                logger.debug("Dropped cache write for %s computed before an invalidation", key)
                return
            # Re-setting a key moves it to the back of the insertion order
            self._entries.pop(key, None)
            while len(self._entries) >= self._max_entries:
                evicted, _ = self._entries.popitem(last=False)
                query_cache_evictions_total.inc()
                logger.debug("Evicted cache entry %s", evicted)
            self._entries[key] = _Entry(value=value, stored_at=self._clock(), ttl=ttl)

    def invalidate(self, pattern: str) -> int:
        """Drop every entry whose key contains ``pattern``. Returns the count removed."""
        with self._lock:
            self._generation += 1
            doomed = [key for key in self._entries if pattern in key]
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.debug("Invalidated %d cache entries matching %r", len(doomed), pattern)
        return len(doomed)

    def invalidate_all(self) -> None:
        with self._lock:
            self._generation += 1
            self._entries.clear()

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [key for key, entry in self._entries.items() if entry.expired(now)]
            for key in stale:
                del self._entries[key]
        return len(stale)


def get_query_cache(settings: Settings) -> QueryCache:
    return QueryCache(
        max_entries=settings.query_cache_max_entries,
        default_ttl=settings.query_cache_list_ttl_seconds,
    )
