"""Bounded TTL cache for immutable provider payloads."""

import threading
import time
from typing import Any, Callable, Hashable

from cachetools import TTLCache


class PayloadCache:
    """Thread-safe ``cachetools.TTLCache`` holding at most ``maxsize`` payloads."""

    def __init__(self, maxsize: int, ttl: float, timer: Callable[[], float] = time.monotonic):
        self._cache = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            self._cache.expire()
            return len(self._cache)

    def get_or_set(self, key: Hashable, factory: Callable[[], Any]) -> Any:
        """Return the cached value or compute, store and return it.

        The factory runs outside the lock; concurrent misses may both call it.
        """
        with self._lock:
            value = self._cache.get(key)
        if value is not None:
            return value

        value = factory()
        with self._lock:
            self._cache[key] = value
        return value
