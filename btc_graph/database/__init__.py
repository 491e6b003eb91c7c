"""Graph store and its table definitions."""

from btc_graph.database.store import GraphStore
from btc_graph.database.models import (
    Base,
    BlockNode,
    TransactionNode,
    OutputNode,
    AddressNode,
    ChainEdge,
    IncEdge,
    OutEdge,
    InEdge,
    LockedEdge,
    CoinbaseEdge,
)

__all__ = [
    "GraphStore",
    "Base",
    "BlockNode",
    "TransactionNode",
    "OutputNode",
    "AddressNode",
    "ChainEdge",
    "IncEdge",
    "OutEdge",
    "InEdge",
    "LockedEdge",
    "CoinbaseEdge",
]
