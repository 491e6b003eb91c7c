"""Batch ingestion of height ranges from the chain data provider."""

import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import structlog

from btc_graph.core.heights import OrphanResolver
from btc_graph.core.normalizer import RecordNormalizer
from btc_graph.core.rpc_client import ChainDataProvider
from btc_graph.database.store import GraphStore
from btc_graph.exceptions import (
    PerTransactionError,
    PermanentProviderError,
    ProviderError,
    StoreWriteError,
)
from btc_graph.models.records import TransactionRecord
from btc_graph.utils.retry import RetryPolicy, with_retry

logger = structlog.get_logger(__name__)


@dataclass
class BlockIngestResult:
    """Outcome of ingesting one height."""
    height: int
    hash: str
    stored: bool
    assigned_height: Optional[int] = None
    transactions: int = 0
    failed_txids: List[str] = field(default_factory=list)


@dataclass
class IngestionReport:
    """Aggregate outcome of a range ingestion."""
    start_height: int
    end_height: int
    stored: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    failed_txids: List[str] = field(default_factory=list)
    orphans_resolved: int = 0

    def add(self, result: BlockIngestResult) -> None:
        if result.stored:
            self.stored.append(result.height)
        else:
            self.skipped.append(result.height)
        self.failed_txids.extend(result.failed_txids)


class BatchIngestionEngine:
    """Fetches and stores blocks for height ranges with bounded concurrency."""

    def __init__(self, provider: ChainDataProvider, store: GraphStore,
                 normalizer: Optional[RecordNormalizer] = None,
                 orphan_resolver: Optional[OrphanResolver] = None,
                 batch_size: int = 10,
                 concurrency: int = 3,
                 base_delay: float = 0.2,
                 store_retry_attempts: int = 3,
                 sleep: Callable[[float], None] = time.sleep):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")

        self.provider = provider
        self.store = store
        self.normalizer = normalizer or RecordNormalizer()
        self.orphan_resolver = orphan_resolver
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.base_delay = base_delay
        self.store_retry_policy = RetryPolicy(
            max_retries=max(store_retry_attempts - 1, 0),
            initial_delay=0.5,
            max_delay=5.0,
        )
        self._sleep = sleep
        self.logger = logger.bind(component="ingestion_engine")

    def ingest_block(self, height: int, anchor: bool = False) -> BlockIngestResult:
        """
        Fetch and store the block at ``height``.

        No-op if the block is already stored on a live branch. Transactions that
        cannot be fetched or normalized are logged and left out; the block and
        the remaining transactions are written as one unit.

        With ``anchor`` the block is pinned to ``height`` when its parent is not
        indexed, so a range that does not start at genesis still gets heights.
        """
        block_hash = self.provider.get_hash(height)

        if self.store.block_exists(block_hash):
            self.logger.debug("Block already stored, skipping", height=height, hash=block_hash)
            if anchor and self.store.anchor_height(block_hash, height):
                self.store.propagate_heights(block_hash)
            return BlockIngestResult(height=height, hash=block_hash, stored=False)

        block = self.normalizer.normalize_block(self.provider.get_block(block_hash))
        if block.hash != block_hash:
            raise PermanentProviderError(
                f"Provider returned block {block.hash} for requested hash {block_hash}"
            )

        transactions: List[TransactionRecord] = []
        failed: List[str] = []
        for index, txid in enumerate(block.txids):
            try:
                transactions.append(self._fetch_transaction(txid, block.hash, index))
            except PerTransactionError as e:
                self.logger.warning("Skipping transaction",
                                    height=height, txid=e.txid, error=str(e))
                failed.append(e.txid)

        result = with_retry(
            lambda: self.store.store_block(block, transactions,
                                           anchor_height=height if anchor else None),
            policy=self.store_retry_policy,
            retry_on=(StoreWriteError,),
            should_retry=lambda e: True,
            sleep=self._sleep,
            description=f"store_block:{height}",
        )

        self.logger.info("Block ingested",
                         height=height,
                         hash=block_hash,
                         assigned_height=result['height'],
                         tx_count=len(transactions),
                         failed_tx=len(failed))

        return BlockIngestResult(
            height=height,
            hash=block_hash,
            stored=True,
            assigned_height=result['height'],
            transactions=len(transactions),
            failed_txids=failed,
        )

    def _fetch_transaction(self, txid: str, block_hash: str, index: int) -> TransactionRecord:
        try:
            raw = self.provider.get_transaction(txid)
            return self.normalizer.normalize_transaction(raw, txid, block_hash, index)
        except ProviderError as e:
            raise PerTransactionError(txid, str(e)) from e

    def ingest_batch(self, heights: List[int], concurrency: Optional[int] = None,
                     anchor_at: Optional[int] = None) -> List[BlockIngestResult]:
        """Ingest a batch of heights on a bounded worker pool.

        Worker ``i`` starts after ``base_delay * (i % concurrency)`` seconds. The
        first block-level failure cancels the heights not yet started, lets the
        in-flight ones finish, and propagates.
        """
        concurrency = concurrency or self.concurrency

        if concurrency == 1:
            return [self.ingest_block(height, anchor=height == anchor_at) for height in heights]

        results = []
        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="ingest") as executor:
            futures = {
                executor.submit(self._staggered_ingest, height,
                                self.base_delay * (index % concurrency),
                                height == anchor_at): height
                for index, height in enumerate(heights)
            }
            try:
                for future in as_completed(futures):
                    results.append(future.result())
            except Exception:
                for future in futures:
                    future.cancel()
                raise

        return sorted(results, key=lambda r: r.height)

    def _staggered_ingest(self, height: int, delay: float, anchor: bool) -> BlockIngestResult:
        if delay > 0:
            self._sleep(delay)
        return self.ingest_block(height, anchor=anchor)

    def ingest_range(self, start_height: int, end_height: int,
                     batch_size: Optional[int] = None,
                     concurrency: Optional[int] = None,
                     anchor_start: bool = False) -> IngestionReport:
        """
        Ingest every height in ``[start_height, end_height]``.

        Args:
            start_height: First height (inclusive)
            end_height: Last height (inclusive)
            batch_size: Heights per batch (default: engine setting)
            concurrency: Concurrent fetches per batch (default: engine setting)
            anchor_start: Pin the first block to ``start_height`` if its parent
                is not indexed
        """
        anchor_at = start_height if anchor_start else None
        batch_size = batch_size or self.batch_size
        report = IngestionReport(start_height=start_height, end_height=end_height)

        if start_height > end_height:
            self.logger.warning("Start height is greater than end height",
                                start=start_height, end=end_height)
            return report

        total = end_height - start_height + 1
        self.logger.info("Ingesting height range",
                         start=start_height, end=end_height, total_blocks=total)

        for batch_start in range(start_height, end_height + 1, batch_size):
            batch_end = min(batch_start + batch_size - 1, end_height)

            self.logger.info("Processing block batch",
                             start=batch_start,
                             end=batch_end,
                             progress=f"{((batch_start - start_height) / total * 100):.1f}%")

            for result in self.ingest_batch(list(range(batch_start, batch_end + 1)),
                                            concurrency, anchor_at):
                report.add(result)

            if self.orphan_resolver is not None:
                report.orphans_resolved += len(self.orphan_resolver.resolve().resolved)

        self.logger.info("Height range ingested",
                         start=start_height,
                         end=end_height,
                         stored=len(report.stored),
                         skipped=len(report.skipped),
                         failed_tx=len(report.failed_txids))
        return report
