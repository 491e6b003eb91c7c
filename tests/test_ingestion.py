"""
Unit tests for the batch ingestion engine.

Tests range partitioning, per-transaction degradation, block-level failure
propagation, store retries and staggered concurrent fetches.
"""

import threading
from unittest.mock import MagicMock, patch

import pytest

from btc_graph.core.heights import OrphanResolution
from btc_graph.core.ingestion import BatchIngestionEngine, IngestionReport
from btc_graph.exceptions import PermanentProviderError, StoreWriteError
from btc_graph.models.records import outpoint_id

from conftest import FakeChainProvider, no_sleep


class TestIngestRange:
    """Tests for ingest_range over a fake chain."""

    def test_stores_every_height(self, store, chain, make_engine):
        """Test all heights are stored with parent-derived heights."""
        report = make_engine(chain).ingest_range(0, 4)

        assert report.stored == [0, 1, 2, 3, 4]
        assert report.skipped == []
        for height in range(5):
            assert store.hash_at_height(height) == chain.hash_at(height)
        assert store.orphan_blocks() == []

    def test_fees_and_spends(self, store, chain, make_engine):
        """Test fees and spent flags of ingested transactions."""
        make_engine(chain).ingest_range(0, 2)

        spend = store.get_transaction(chain.spend_txid(2))
        assert spend['fee'] == FakeChainProvider.FEE_SATOSHIS
        assert store.get_transaction(chain.coinbase_txid(2))['fee'] == 0
        assert store.get_output(outpoint_id(chain.coinbase_txid(1), 0))['spent'] is True
        assert store.get_output(outpoint_id(chain.coinbase_txid(2), 0))['spent'] is False

    def test_existing_blocks_skipped(self, chain, make_engine):
        """Test a second pass over the same range stores nothing."""
        engine = make_engine(chain)
        engine.ingest_range(0, 4)
        calls_before = chain.calls['get_block']

        report = engine.ingest_range(0, 4)

        assert report.stored == []
        assert report.skipped == [0, 1, 2, 3, 4]
        assert chain.calls['get_block'] == calls_before

    def test_start_after_end(self, chain, make_engine):
        """Test an inverted range is a logged no-op."""
        report = make_engine(chain).ingest_range(4, 2)

        assert report == IngestionReport(start_height=4, end_height=2)
        assert chain.calls['get_hash'] == 0

    def test_batches_partition_range(self, chain, make_engine):
        """Test the range is cut into fixed-size batches."""
        engine = make_engine(chain, batch_size=2)

        with patch.object(engine, 'ingest_batch', wraps=engine.ingest_batch) as batch:
            engine.ingest_range(0, 4)

        assert [c.args[0] for c in batch.call_args_list] == [[0, 1], [2, 3], [4]]

    def test_resolver_runs_after_each_batch(self, store, chain):
        """Test the orphan resolver is invoked once per batch."""
        resolver = MagicMock()
        resolver.resolve.return_value = OrphanResolution()
        engine = BatchIngestionEngine(chain, store, orphan_resolver=resolver,
                                      batch_size=2, concurrency=1, sleep=no_sleep)

        engine.ingest_range(0, 4)

        assert resolver.resolve.call_count == 3

    def test_anchor_start(self, store, make_engine):
        """Test a range not starting at genesis gets heights when anchored."""
        chain = FakeChainProvider(length=8)
        make_engine(chain).ingest_range(5, 7, anchor_start=True)

        assert [store.get_block(chain.hash_at(h))['height'] for h in (5, 6, 7)] == [5, 6, 7]

    def test_unanchored_partial_range_stays_orphaned(self, store, make_engine):
        """Test a range whose first parent is missing is stored without heights."""
        chain = FakeChainProvider(length=8)
        make_engine(chain).ingest_range(5, 7)

        assert len(store.orphan_blocks()) == 3

    def test_anchor_existing_block(self, store, make_engine):
        """Test anchoring a block that was already stored as an orphan."""
        chain = FakeChainProvider(length=8)
        engine = make_engine(chain)
        engine.ingest_range(5, 7)

        engine.ingest_range(5, 7, anchor_start=True)

        assert store.get_block(chain.hash_at(7))['height'] == 7


class TestIngestBlock:
    """Tests for single-block ingestion failure handling."""

    def test_transaction_failure_is_skipped(self, store, chain, make_engine):
        """Test a failing transaction is logged and left out of its block."""
        failing = chain.spend_txid(2)
        chain.failing_txids.add(failing)

        report = make_engine(chain).ingest_range(0, 3)

        assert report.stored == [0, 1, 2, 3]
        assert report.failed_txids == [failing]
        assert store.get_transaction(failing) is None
        assert store.block_transactions(chain.hash_at(2)) == [chain.coinbase_txid(2)]

    @pytest.mark.parametrize("corrupt", [
        lambda tx: tx['vin'][0].update(vout="not-a-number"),
        lambda tx: tx['vin'][0].update(txinwitness=[48, 69]),
        lambda tx: tx['vout'].append("not-an-object"),
    ])
    def test_malformed_transaction_is_skipped(self, store, chain, make_engine, corrupt):
        """Test one bad field in a transaction does not fail its block."""
        malformed = chain.spend_txid(2)
        corrupt(chain.transactions[malformed])

        report = make_engine(chain).ingest_range(0, 2)

        assert report.stored == [0, 1, 2]
        assert report.failed_txids == [malformed]
        assert store.get_block(chain.hash_at(2))['height'] == 2
        assert store.get_transaction(malformed) is None

    def test_block_failure_propagates(self, chain, make_engine):
        """Test a block fetch failure aborts the range."""
        engine = make_engine(chain)
        bad_hash = chain.hash_at(3)
        original = chain.get_block

        def get_block(block_hash):
            if block_hash == bad_hash:
                raise PermanentProviderError("block unavailable")
            return original(block_hash)

        chain.get_block = get_block

        with pytest.raises(PermanentProviderError):
            engine.ingest_range(0, 4)

    def test_hash_mismatch_rejected(self, chain, make_engine):
        """Test a block payload for the wrong hash is a permanent error."""
        engine = make_engine(chain)
        chain.get_block = lambda block_hash: dict(chain.blocks[0])

        with pytest.raises(PermanentProviderError):
            engine.ingest_block(1)

    def test_store_failure_retried(self, store, chain, make_engine):
        """Test a failed block write is retried as a whole unit."""
        engine = make_engine(chain)
        real_store_block = store.store_block

        calls = []

        def flaky(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise StoreWriteError("database is locked")
            return real_store_block(*args, **kwargs)

        with patch.object(store, 'store_block', side_effect=flaky):
            result = engine.ingest_block(0)

        assert result.stored is True
        assert len(calls) == 2
        assert store.hash_at_height(0) == chain.hash_at(0)

    def test_store_failure_exhausts_retries(self, store, chain, make_engine):
        """Test the write error propagates after store_retry_attempts tries."""
        engine = make_engine(chain, store_retry_attempts=3)

        with patch.object(store, 'store_block', side_effect=StoreWriteError("disk full")) as mocked:
            with pytest.raises(StoreWriteError):
                engine.ingest_block(0)

        assert mocked.call_count == 3


class TestConcurrency:
    """Tests for the bounded, staggered worker pool."""

    def _mock_store(self):
        store = MagicMock()
        store.block_exists.return_value = False
        store.store_block.return_value = {'height': None, 'prev_hash': 'x', 'fees': {}}
        return store

    def test_stagger_delays(self):
        """Test worker i waits base_delay * (i % concurrency)."""
        chain = FakeChainProvider(length=6)
        delays = []
        lock = threading.Lock()

        def record_sleep(seconds):
            with lock:
                delays.append(round(seconds, 6))

        engine = BatchIngestionEngine(chain, self._mock_store(), concurrency=3,
                                      base_delay=0.2, sleep=record_sleep)

        results = engine.ingest_batch([0, 1, 2, 3, 4, 5])

        assert [r.height for r in results] == [0, 1, 2, 3, 4, 5]
        assert sorted(delays) == [0.2, 0.2, 0.4, 0.4]

    def test_concurrent_failure_propagates(self):
        """Test one failing height aborts the concurrent batch."""
        chain = FakeChainProvider(length=6)
        original = chain.get_hash

        def get_hash(height):
            if height == 3:
                raise PermanentProviderError("boom")
            return original(height)

        chain.get_hash = get_hash
        engine = BatchIngestionEngine(chain, self._mock_store(), concurrency=3,
                                      base_delay=0.0, sleep=no_sleep)

        with pytest.raises(PermanentProviderError):
            engine.ingest_batch([0, 1, 2, 3, 4, 5])

    def test_invalid_settings(self, chain):
        """Test non-positive batch size or concurrency is rejected."""
        with pytest.raises(ValueError):
            BatchIngestionEngine(chain, MagicMock(), batch_size=0)
        with pytest.raises(ValueError):
            BatchIngestionEngine(chain, MagicMock(), concurrency=0)
