"""Pytest configuration and fixtures for graph indexer tests."""

import hashlib
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from btc_graph.core.heights import OrphanResolver
from btc_graph.core.ingestion import BatchIngestionEngine
from btc_graph.database.store import GraphStore
from btc_graph.exceptions import PermanentProviderError
from btc_graph.models.config import IndexerConfig
from btc_graph.models.records import (
    BlockRecord,
    GENESIS_PREV_HASH,
    InputRecord,
    OutputRecord,
    TransactionRecord,
)


def sha(text: str) -> str:
    return hashlib.sha256(text.encode()).hexdigest()


def no_sleep(seconds: float) -> None:
    pass


# ============================================================================
# FAKE CHAIN DATA PROVIDER
# ============================================================================

class FakeChainProvider:
    """In-memory chain served through the provider interface.

    Every block carries a coinbase paying 50 BTC; from height 1 on it also
    carries a transaction spending the previous block's coinbase output with
    a fee of 10,000 satoshis.
    """

    COINBASE_VALUE = 50.0
    SPEND_VALUE = 49.9999
    FEE_SATOSHIS = 10_000

    def __init__(self, length: int = 0, label: str = "main"):
        self.blocks: List[Dict[str, Any]] = []
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.failing_txids = set()
        self.calls = Counter()
        if length:
            self.extend_to(length - 1, label)

    # -- chain construction ------------------------------------------------

    @property
    def tip(self) -> int:
        return len(self.blocks) - 1

    def extend_to(self, tip: int, label: str = "main") -> None:
        while self.tip < tip:
            self._append_block(label)

    def fork(self, fork_height: int, new_tip: int, label: str) -> None:
        """Keep heights ``0..fork_height`` and replace everything above."""
        self.blocks = self.blocks[:fork_height + 1]
        self.extend_to(new_tip, label)

    def hash_at(self, height: int) -> str:
        return self.blocks[height]['hash']

    def coinbase_txid(self, height: int) -> str:
        return self.blocks[height]['tx'][0]

    def spend_txid(self, height: int) -> str:
        return self.blocks[height]['tx'][1]

    def _append_block(self, label: str) -> None:
        height = len(self.blocks)
        block_hash = sha(f"block:{label}:{height}")

        coinbase_txid = sha(f"coinbase:{label}:{height}")
        self.transactions[coinbase_txid] = {
            'txid': coinbase_txid,
            'version': 1,
            'locktime': 0,
            'size': 134,
            'vin': [{'coinbase': f"04ffff001d01{height:04x}", 'sequence': 4294967295}],
            'vout': [self._output(0, self.COINBASE_VALUE, f"miner_{label}_{height}")],
        }
        txids = [coinbase_txid]

        if height > 0:
            spend_txid = sha(f"spend:{label}:{height}")
            self.transactions[spend_txid] = {
                'txid': spend_txid,
                'version': 2,
                'locktime': 0,
                'size': 225,
                'vin': [{
                    'txid': self.blocks[height - 1]['tx'][0],
                    'vout': 0,
                    'scriptSig': {'hex': '4830450221'},
                    'sequence': 4294967294,
                }],
                'vout': [self._output(0, self.SPEND_VALUE, f"payee_{label}_{height}")],
            }
            txids.append(spend_txid)

        block = {
            'hash': block_hash,
            'size': 285,
            'version': 1,
            'merkleroot': sha(f"merkle:{label}:{height}"),
            'time': 1231006505 + height * 600,
            'bits': '1d00ffff',
            'nonce': height,
            'nTx': len(txids),
            'tx': txids,
        }
        if height > 0:
            block['previousblockhash'] = self.blocks[height - 1]['hash']
        self.blocks.append(block)

    @staticmethod
    def _output(n: int, value: float, address: str) -> Dict[str, Any]:
        return {
            'value': value,
            'n': n,
            'scriptPubKey': {'hex': '76a914' + sha(address)[:40] + '88ac', 'address': address},
        }

    # -- provider interface ------------------------------------------------

    def get_tip(self) -> int:
        self.calls['get_tip'] += 1
        return self.tip

    def get_hash(self, height: int) -> str:
        self.calls['get_hash'] += 1
        if height < 0 or height > self.tip:
            raise PermanentProviderError(f"Block height {height} out of range")
        return self.blocks[height]['hash']

    def get_block(self, block_hash: str) -> Dict[str, Any]:
        self.calls['get_block'] += 1
        for block in self.blocks:
            if block['hash'] == block_hash:
                return dict(block)
        raise PermanentProviderError(f"Block {block_hash} not found")

    def get_transaction(self, txid: str) -> Dict[str, Any]:
        self.calls['get_transaction'] += 1
        if txid in self.failing_txids:
            raise PermanentProviderError(f"Transaction {txid} unavailable")
        return dict(self.transactions[txid])

    def test_connection(self) -> bool:
        return True

    def close(self) -> None:
        pass


# ============================================================================
# CONFIGURATION / STORE FIXTURES
# ============================================================================

@pytest.fixture
def config(tmp_path):
    """Indexer configuration backed by a SQLite file."""
    return IndexerConfig(
        _env_file=None,
        db_url=f"sqlite:///{tmp_path / 'graph.db'}",
        log_level="WARNING",
        log_format="text",
        sync_stagger_delay=0.0,
        sync_concurrency=1,
        sync_batch_size=10,
    )


@pytest.fixture
def store(config):
    """Initialized graph store."""
    graph_store = GraphStore(config)
    graph_store.initialize()
    yield graph_store
    graph_store.close()


@pytest.fixture
def chain():
    """Fake provider with blocks 0..4."""
    return FakeChainProvider(length=5)


@pytest.fixture
def make_engine(store):
    """Factory for ingestion engines against the test store."""
    def factory(provider, concurrency=1, batch_size=10, resolver=True, **kwargs):
        return BatchIngestionEngine(
            provider,
            store,
            orphan_resolver=OrphanResolver(store) if resolver else None,
            batch_size=batch_size,
            concurrency=concurrency,
            base_delay=0.0,
            sleep=no_sleep,
            **kwargs,
        )
    return factory


# ============================================================================
# RECORD FIXTURES
# ============================================================================

BLOCK_TIME = datetime(2009, 1, 3, 18, 15, 5, tzinfo=timezone.utc)


@pytest.fixture
def make_block():
    """Build a BlockRecord; ``prev_hash=None`` makes a genesis block."""
    def factory(block_hash: str, prev_hash: Optional[str] = None, txids=()) -> BlockRecord:
        return BlockRecord(
            hash=block_hash,
            prev_hash=prev_hash or GENESIS_PREV_HASH,
            size=285,
            tx_count=len(txids),
            version=1,
            merkle_root=sha(f"merkle:{block_hash}"),
            time=BLOCK_TIME,
            bits="1d00ffff",
            nonce=2083236893,
            txids=list(txids),
        )
    return factory


@pytest.fixture
def make_coinbase():
    """Build a coinbase TransactionRecord paying ``value`` satoshis."""
    def factory(txid: str, block_hash: str, value: int = 5_000_000_000,
                address: str = "1A1zP1eP5QGefi2DMPTfTL5SLmv7DivfNa") -> TransactionRecord:
        return TransactionRecord(
            txid=txid,
            block_hash=block_hash,
            index_in_block=0,
            version=1,
            locktime=0,
            size=204,
            inputs=[InputRecord(vin=0, prev_txid="0" * 64, prev_vout=0xFFFFFFFF,
                                script_sig="04ffff001d0104", sequence=4294967295)],
            outputs=[OutputRecord(vout=0, value=value, script_pubkey="4104ac", address=address)],
            is_coinbase=True,
        )
    return factory


@pytest.fixture
def make_spend():
    """Build a regular TransactionRecord from (txid, vout) inputs and output values."""
    def factory(txid: str, block_hash: str, inputs, values, index: int = 1,
                address: Optional[str] = None) -> TransactionRecord:
        return TransactionRecord(
            txid=txid,
            block_hash=block_hash,
            index_in_block=index,
            version=2,
            locktime=0,
            size=225,
            inputs=[InputRecord(vin=i, prev_txid=prev_txid, prev_vout=prev_vout,
                                script_sig="4830450221", sequence=4294967294)
                    for i, (prev_txid, prev_vout) in enumerate(inputs)],
            outputs=[OutputRecord(vout=i, value=value, script_pubkey="76a914" + "ab" * 20 + "88ac",
                                  address=address)
                     for i, value in enumerate(values)],
        )
    return factory
