"""Retry with exponential backoff and jitter."""

import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

import structlog

from btc_graph.exceptions import TransientProviderError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)


@dataclass
class RetryPolicy:
    """Backoff parameters; delays in seconds."""
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    factor: float = 2.0
    jitter: float = 0.1
    
    def next_delay(self, delay: float, rng: Callable[[], float] = random.random) -> float:
        """Grow ``delay`` by ``factor``, cap at ``max_delay`` and add jitter."""
        return min(delay * self.factor, self.max_delay) + rng() * self.jitter * delay


def is_retryable(error: BaseException) -> bool:
    """Whether a failed provider call is worth retrying."""
    if isinstance(error, TransientProviderError):
        return True
    message = str(error).lower()
    return "rate limit" in message


def with_retry(fn: Callable[[], T],
               policy: Optional[RetryPolicy] = None,
               retry_on: Tuple[Type[BaseException], ...] = (Exception,),
               should_retry: Callable[[BaseException], bool] = is_retryable,
               sleep: Callable[[float], None] = time.sleep,
               description: str = "operation") -> T:
    """
    Call ``fn`` until it succeeds or the retry budget is spent.
    
    Args:
        fn: Zero-argument callable to run
        policy: Backoff parameters (defaults to RetryPolicy())
        retry_on: Exception types considered at all; others propagate at once
        should_retry: Predicate deciding whether a caught error is retryable
        sleep: Sleep function (injected by tests)
        description: Label for log lines
    """
    policy = policy or RetryPolicy()
    attempt = 0
    delay = policy.initial_delay
    
    while True:
        try:
            return fn()
        except retry_on as e:
            attempt += 1
            if attempt > policy.max_retries or not should_retry(e):
                raise
            
            delay = policy.next_delay(delay)
            logger.warning("Retrying after failure",
                           operation=description,
                           attempt=attempt,
                           delay=round(delay, 3),
                           error=str(e))
            sleep(delay)
