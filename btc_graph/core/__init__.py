"""Core indexing components."""

from btc_graph.core.indexer import ChainIndexer
from btc_graph.core.rpc_client import BitcoinRPCClient, ChainDataProvider
from btc_graph.core.normalizer import RecordNormalizer
from btc_graph.core.heights import HeightPropagator, OrphanResolver
from btc_graph.core.ingestion import BatchIngestionEngine
from btc_graph.core.reorg import ReorgDetector
from btc_graph.core.scheduler import SyncScheduler

__all__ = [
    "ChainIndexer",
    "BitcoinRPCClient",
    "ChainDataProvider",
    "RecordNormalizer",
    "HeightPropagator",
    "OrphanResolver",
    "BatchIngestionEngine",
    "ReorgDetector",
    "SyncScheduler",
]
