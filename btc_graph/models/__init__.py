"""Data models and configuration."""

from btc_graph.models.config import IndexerConfig
from btc_graph.models.records import (
    BlockRecord,
    TransactionRecord,
    InputRecord,
    OutputRecord,
    GENESIS_PREV_HASH,
)

__all__ = [
    "IndexerConfig",
    "BlockRecord",
    "TransactionRecord",
    "InputRecord",
    "OutputRecord",
    "GENESIS_PREV_HASH",
]
