"""
Bitcoin Graph Indexer

Indexes blocks and transactions from a chain-data provider into a graph-shaped
store (blocks, transactions, outputs and addresses joined by labeled edges) and
keeps it consistent across orphaned blocks and chain reorganizations.
"""

__version__ = "1.0.0"
__author__ = "Bitcoin Data Engineering Team"
__description__ = "Graph indexer for Bitcoin blocks, transactions and spend relationships"

from btc_graph.core.indexer import ChainIndexer
from btc_graph.core.rpc_client import BitcoinRPCClient
from btc_graph.database.store import GraphStore
from btc_graph.models.config import IndexerConfig

__all__ = [
    "ChainIndexer",
    "BitcoinRPCClient",
    "GraphStore",
    "IndexerConfig",
]
