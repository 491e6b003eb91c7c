"""Utility functions and helpers."""

from btc_graph.utils.logging import setup_logging
from btc_graph.utils.bitcoin import btc_to_satoshi, decode_address, get_script_type
from btc_graph.utils.cache import PayloadCache
from btc_graph.utils.rate_limiter import RateLimiter
from btc_graph.utils.retry import RetryPolicy, with_retry, is_retryable

__all__ = [
    "setup_logging",
    "btc_to_satoshi",
    "decode_address",
    "get_script_type",
    "PayloadCache",
    "RateLimiter",
    "RetryPolicy",
    "with_retry",
    "is_retryable",
]
