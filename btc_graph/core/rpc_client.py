"""Chain data provider interface and Bitcoin Core JSON-RPC client."""

import json
import time
from typing import Any, Dict, List, Optional, Protocol

import requests
import structlog

from btc_graph.exceptions import PermanentProviderError, TransientProviderError
from btc_graph.models.config import IndexerConfig
from btc_graph.utils.cache import PayloadCache
from btc_graph.utils.rate_limiter import RateLimiter
from btc_graph.utils.retry import RETRYABLE_STATUS_CODES, RetryPolicy, with_retry

logger = structlog.get_logger(__name__)


class ChainDataProvider(Protocol):
    """Upstream source of blocks, transactions and the current tip."""

    def get_tip(self) -> int:
        """Height of the provider's best block."""
        ...

    def get_hash(self, height: int) -> str:
        """Canonical block hash at ``height``."""
        ...

    def get_block(self, block_hash: str) -> Dict[str, Any]:
        """Block header fields plus ``tx`` (list of txids)."""
        ...

    def get_transaction(self, txid: str) -> Dict[str, Any]:
        """Verbose transaction with ``vin`` and ``vout``."""
        ...


class BitcoinRPCClient:
    """Bitcoin Core JSON-RPC client with rate limiting, retries and payload caching."""

    def __init__(self, config: IndexerConfig,
                 session: Optional[requests.Session] = None,
                 rate_limiter: Optional[RateLimiter] = None,
                 sleep=time.sleep):
        self.config = config
        self.session = session or requests.Session()
        self.session.headers.update({
            'Content-Type': 'application/json',
            'User-Agent': 'btc-graph-indexer/1.0.0'
        })

        self.rpc_url = config.bitcoin_rpc_url
        self.auth = (config.bitcoin_rpc_user, config.bitcoin_rpc_password)

        self.rate_limiter = rate_limiter or RateLimiter(
            config.rate_limit_max_requests, config.rate_limit_time_window
        )
        self.retry_policy = RetryPolicy(
            max_retries=config.retry_max_retries,
            initial_delay=config.retry_initial_delay,
            max_delay=config.retry_max_delay,
            factor=config.retry_factor,
        )
        self._sleep = sleep

        # Only hash-addressed payloads are cached; tip and height lookups
        # must always reach the node so reorgs stay visible.
        self.block_cache = PayloadCache(config.cache_max_size, config.cache_ttl_block)
        self.tx_cache = PayloadCache(config.cache_max_size, config.cache_ttl_tx)

        logger.info("Bitcoin RPC client initialized",
                    url=self.rpc_url,
                    max_requests=config.rate_limit_max_requests,
                    time_window=config.rate_limit_time_window)

    def _call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """Single JSON-RPC round trip, classifying failures."""
        payload = {
            "jsonrpc": "1.0",
            "id": int(time.time() * 1000),
            "method": method,
            "params": params or [],
        }

        self.rate_limiter.acquire()

        try:
            response = self.session.post(
                self.rpc_url,
                json=payload,
                auth=self.auth,
                timeout=self.config.bitcoin_rpc_timeout
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientProviderError(f"{method}: {e}") from e
        except requests.RequestException as e:
            raise PermanentProviderError(f"{method}: {e}") from e

        # bitcoind reports RPC errors as HTTP 500 with a JSON body, so the
        # body is inspected before the status code.
        try:
            data = response.json()
        except (ValueError, json.JSONDecodeError) as e:
            if response.status_code in RETRYABLE_STATUS_CODES:
                raise TransientProviderError(
                    f"{method}: HTTP {response.status_code}", status_code=response.status_code
                ) from e
            if response.status_code >= 400:
                raise PermanentProviderError(
                    f"{method}: HTTP {response.status_code}", status_code=response.status_code
                ) from e
            raise PermanentProviderError(f"{method}: invalid JSON response") from e

        error = data.get('error') if isinstance(data, dict) else None
        if error:
            message = error.get('message', 'Unknown RPC error') if isinstance(error, dict) else str(error)
            code = error.get('code', -1) if isinstance(error, dict) else -1
            if "rate limit" in message.lower():
                raise TransientProviderError(f"{method}: RPC error {code}: {message}")
            raise PermanentProviderError(f"{method}: RPC error {code}: {message}")

        if response.status_code in RETRYABLE_STATUS_CODES:
            raise TransientProviderError(
                f"{method}: HTTP {response.status_code}", status_code=response.status_code
            )
        if response.status_code >= 400:
            raise PermanentProviderError(
                f"{method}: HTTP {response.status_code}", status_code=response.status_code
            )

        return data.get('result')

    def _make_request(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """RPC call with exponential backoff on transient failures."""
        return with_retry(
            lambda: self._call(method, params),
            policy=self.retry_policy,
            retry_on=(TransientProviderError,),
            sleep=self._sleep,
            description=method,
        )

    def get_tip(self) -> int:
        """Get the current block height."""
        result = self._make_request("getblockcount")
        if not isinstance(result, int):
            raise PermanentProviderError(f"getblockcount returned {result!r}")
        return result

    def get_hash(self, height: int) -> str:
        """Get block hash by height."""
        result = self._make_request("getblockhash", [height])
        if not isinstance(result, str):
            raise PermanentProviderError(f"getblockhash({height}) returned {result!r}")
        return result

    def get_block(self, block_hash: str) -> Dict[str, Any]:
        """Get block header and txids (verbosity 1)."""
        return self.block_cache.get_or_set(
            block_hash, lambda: self._make_request("getblock", [block_hash, 1])
        )

    def get_transaction(self, txid: str) -> Dict[str, Any]:
        """Get verbose transaction data."""
        return self.tx_cache.get_or_set(
            txid, lambda: self._make_request("getrawtransaction", [txid, True])
        )

    def test_connection(self) -> bool:
        """Test RPC connection."""
        try:
            tip = self.get_tip()
            logger.info("RPC connection successful", tip=tip)
            return tip >= 0
        except (TransientProviderError, PermanentProviderError) as e:
            logger.error("RPC connection failed", error=str(e))
            return False

    def close(self):
        """Close the RPC session."""
        self.session.close()
        logger.info("RPC client session closed")
