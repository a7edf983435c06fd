from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, int]

DEFAULT_MAX_ENTRIES = 100
DEFAULT_TTL_SECONDS = 3600.0


class AnalysisCache:
    """
    Thread-safe in-memory cache of serialized analysis records.

    Keyed by (sha1, analyzer_version). Size-bounded (least recently used is
    evicted first) with expiry measured from the last access.
    get_or_compute() runs at most one computation per key at a time; other
    callers for the same key wait for that result.
    """

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_entries = max(1, int(max_entries))
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: "OrderedDict[CacheKey, Tuple[Dict[str, Any], float]]" = OrderedDict()
        self._inflight: Dict[CacheKey, threading.Lock] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            self._expire_locked()
            return len(self._entries)

    def _expire_locked(self) -> None:
        now = self._clock()
        stale = [k for k, (_, last) in self._entries.items() if now - last > self.ttl_seconds]
        for k in stale:
            del self._entries[k]

    def get(self, key: CacheKey) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._expire_locked()
            hit = self._entries.get(key)
            if hit is None:
                return None
            self._entries[key] = (hit[0], self._clock())
            self._entries.move_to_end(key)
            return hit[0]

    def put(self, key: CacheKey, value: Dict[str, Any]) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock())
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("cache evicted %s", evicted)

    def invalidate(self, key: CacheKey) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def get_or_compute(self, key: CacheKey, compute: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
        value = self.get(key)
        if value is not None:
            self.hits += 1
            return value

        with self._lock:
            key_lock = self._inflight.setdefault(key, threading.Lock())

        with key_lock:
            # Another caller may have finished while we waited.
            value = self.get(key)
            if value is not None:
                self.hits += 1
                return value
            self.misses += 1
            try:
                value = compute()
                self.put(key, value)
            finally:
                with self._lock:
                    self._inflight.pop(key, None)
        return value
