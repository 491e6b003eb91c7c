"""Canonical record types produced at the ingestion boundary."""

from datetime import datetime
from typing import List, Optional
from dataclasses import dataclass, field

# prev hash carried by the genesis block
GENESIS_PREV_HASH = "0" * 64

# outpoint referenced by a coinbase input
COINBASE_PREV_TXID = "0" * 64
COINBASE_PREV_VOUT = 0xFFFFFFFF


def outpoint_id(txid: str, vout: int) -> str:
    """Natural identity of an output node."""
    return f"{txid}:{vout}"


def coinbase_output_id(block_hash: str) -> str:
    """Identity of the synthetic output feeding a block's coinbase input."""
    return f"{block_hash}:coinbase"


@dataclass
class BlockRecord:
    """Block header as stored in the graph."""
    hash: str
    prev_hash: str
    size: Optional[int]
    tx_count: int
    version: Optional[int]
    merkle_root: Optional[str]
    time: datetime
    bits: Optional[str]
    nonce: Optional[int]
    txids: List[str] = field(default_factory=list)

    @property
    def is_genesis(self) -> bool:
        return self.prev_hash == GENESIS_PREV_HASH


@dataclass
class InputRecord:
    """Transaction input with its previous output reference."""
    vin: int
    prev_txid: str
    prev_vout: int
    script_sig: str = ""
    sequence: int = 0
    witness: str = ""

    @property
    def output_id(self) -> str:
        return outpoint_id(self.prev_txid, self.prev_vout)


@dataclass
class OutputRecord:
    """Transaction output; value in satoshis."""
    vout: int
    value: int
    script_pubkey: str
    address: Optional[str] = None


@dataclass
class TransactionRecord:
    """Transaction with its position in the including block."""
    txid: str
    block_hash: str
    index_in_block: int
    version: Optional[int]
    locktime: int
    size: Optional[int]
    inputs: List[InputRecord]
    outputs: List[OutputRecord]
    is_coinbase: bool = False

    @property
    def output_total(self) -> int:
        return sum(output.value for output in self.outputs)
