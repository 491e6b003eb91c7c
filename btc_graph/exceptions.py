"""Error taxonomy for the indexer."""

from typing import Optional


class IndexerError(Exception):
    """Base class for all indexer errors."""
    pass


class ProviderError(IndexerError):
    """Chain data provider call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Network or rate-limit failure; retried with backoff."""
    pass


class PermanentProviderError(ProviderError):
    """Malformed or unexpected provider response; never retried."""
    pass


class StoreWriteError(IndexerError):
    """Graph store write failed. The caller retries the whole unit of work."""
    pass


class ConsistencyError(IndexerError):
    """Stored chain and provider chain share no ancestor.

    Raised when the fork-point search reaches genesis (or the configured depth
    limit) without agreement. Points at the wrong network or a corrupted store
    and needs operator action.
    """
    pass


class PerTransactionError(IndexerError):
    """A single transaction inside a block could not be fetched or normalized."""

    def __init__(self, txid: str, message: str):
        super().__init__(f"{txid}: {message}")
        self.txid = txid
