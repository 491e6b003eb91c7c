"""Sliding-window rate limiter for outbound provider calls."""

import threading
import time
from collections import deque
from typing import Callable, Deque

import structlog

logger = structlog.get_logger(__name__)


class RateLimiter:
    """Admit at most ``max_requests`` calls per rolling ``time_window`` seconds.

    Shared by all worker threads; ``acquire()`` blocks the caller until the
    window has room.
    """
    
    def __init__(self, max_requests: int, time_window: float,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if time_window <= 0:
            raise ValueError("time_window must be positive")
        
        self.max_requests = max_requests
        self.time_window = time_window
        self._clock = clock
        self._sleep = sleep
        self._timestamps: Deque[float] = deque()
        self._lock = threading.Lock()
    
    def _prune(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.time_window:
            self._timestamps.popleft()
    
    def acquire(self) -> float:
        """Block until a slot is free, then record the call.

        Returns the total time spent waiting.
        """
        waited = 0.0
        while True:
            with self._lock:
                now = self._clock()
                self._prune(now)
                if len(self._timestamps) < self.max_requests:
                    self._timestamps.append(now)
                    return waited
                wait_time = self.time_window - (now - self._timestamps[0])
            
            logger.debug("Rate limit reached, waiting", wait_seconds=round(wait_time, 3))
            self._sleep(max(wait_time, 0.0))
            waited += max(wait_time, 0.0)
    
    def is_limited(self) -> bool:
        """True if the next call would have to wait."""
        with self._lock:
            self._prune(self._clock())
            return len(self._timestamps) >= self.max_requests
    
    def remaining(self) -> int:
        """Calls still admitted in the current window."""
        with self._lock:
            self._prune(self._clock())
            return max(0, self.max_requests - len(self._timestamps))
    
    def reset_time(self) -> float:
        """Seconds until the oldest call in the window expires (0 if empty)."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            if not self._timestamps:
                return 0.0
            return max(0.0, self.time_window - (now - self._timestamps[0]))
