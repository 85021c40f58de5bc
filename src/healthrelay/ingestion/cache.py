"""
Record Cache

Best-effort TTL cache for aggregate record reads. Writers never go
through the cache; they mutate the record store and invalidate.
"""

from typing import Any, Callable, Hashable
import threading
import time

import structlog

logger = structlog.get_logger(__name__)


class RecordCache:
    """
    TTL cache keyed by read.

    A value stored at ``t`` is returned for reads before ``t + ttl`` and is
    a miss (and dropped) from ``t + ttl`` on.
    """

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[Hashable, tuple[float, Any]] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, key: Hashable) -> Any | None:
        """The cached value, or None on a miss."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            stored_at, value = entry
            if self._clock() - stored_at >= self.ttl_seconds:
                del self._entries[key]
                self._misses += 1
                return None
            self._hits += 1
            return value

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._entries[key] = (self._clock(), value)

    def invalidate(self, key: Hashable) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> dict:
        with self._lock:
            return {
                "entries": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "ttl_seconds": self.ttl_seconds,
            }
