"""SQLAlchemy schema for the block/transaction graph.

Nodes (blocks, transactions, outputs, addresses) are keyed by their natural
identity. Each edge label gets its own table so relationship queries stay
plain joins.
"""

from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, Boolean,
    Text, Index
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


# ============================================================================
# NODES
# ============================================================================

class BlockNode(Base):
    """Block header; ``height`` is NULL while the parent is unresolved."""
    __tablename__ = 'blocks'

    hash = Column(String(64), primary_key=True)
    prev_hash = Column(String(64), nullable=False)
    height = Column(Integer, nullable=True)
    size = Column(Integer)
    tx_count = Column(Integer, nullable=False, default=0)
    version = Column(BigInteger)
    merkle_root = Column(String(64))
    time = Column(DateTime(timezone=True))
    bits = Column(String(16))
    nonce = Column(BigInteger)
    stale = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=func.now())
    updated_at = Column(DateTime(timezone=True), default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index('idx_blocks_height', 'height'),
        Index('idx_blocks_prev_hash', 'prev_hash'),
    )


class TransactionNode(Base):
    """Transaction; ``fee`` stays NULL until every input value is known."""
    __tablename__ = 'transactions'

    txid = Column(String(64), primary_key=True)
    block_hash = Column(String(64), nullable=False)
    index_in_block = Column(Integer, nullable=False)
    version = Column(BigInteger)
    locktime = Column(BigInteger, default=0)
    size = Column(Integer)
    is_coinbase = Column(Boolean, nullable=False, default=False)
    output_total = Column(BigInteger, nullable=False, default=0)
    fee = Column(BigInteger, nullable=True)
    created_at = Column(DateTime(timezone=True), default=func.now())
    updated_at = Column(DateTime(timezone=True), default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index('idx_transactions_block_hash', 'block_hash'),
    )


class OutputNode(Base):
    """Output keyed ``<txid>:<vout>``.

    A row may exist with ``value`` NULL when a spending input was stored before
    the creating transaction.
    """
    __tablename__ = 'outputs'

    id = Column(String(80), primary_key=True)
    txid = Column(String(64))
    vout = Column(BigInteger)
    value = Column(BigInteger, nullable=True)
    script_pubkey = Column(Text)
    address = Column(String(100))
    spent = Column(Boolean, nullable=False, default=False)
    is_coinbase = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=func.now())

    __table_args__ = (
        Index('idx_outputs_txid', 'txid'),
        Index('idx_outputs_address', 'address'),
    )


class AddressNode(Base):
    """Address string."""
    __tablename__ = 'addresses'

    address = Column(String(100), primary_key=True)
    created_at = Column(DateTime(timezone=True), default=func.now())


# ============================================================================
# EDGES
# ============================================================================

class ChainEdge(Base):
    """``chain``: block -> parent block. The parent need not be stored yet."""
    __tablename__ = 'chain_edges'

    block_hash = Column(String(64), primary_key=True)
    parent_hash = Column(String(64), primary_key=True)

    __table_args__ = (
        Index('idx_chain_parent', 'parent_hash'),
    )


class IncEdge(Base):
    """``inc``: transaction -> including block, at position ``i``."""
    __tablename__ = 'inc_edges'

    txid = Column(String(64), primary_key=True)
    block_hash = Column(String(64), primary_key=True)
    i = Column(Integer, nullable=False)

    __table_args__ = (
        Index('idx_inc_block', 'block_hash', 'i'),
    )


class OutEdge(Base):
    """``out``: transaction -> created output."""
    __tablename__ = 'out_edges'

    txid = Column(String(64), primary_key=True)
    output_id = Column(String(80), primary_key=True)
    vout = Column(BigInteger, nullable=False)


class InEdge(Base):
    """``in``: spent output -> consuming transaction."""
    __tablename__ = 'in_edges'

    output_id = Column(String(80), primary_key=True)
    txid = Column(String(64), primary_key=True)
    vin = Column(Integer, nullable=False)
    script_sig = Column(Text)
    sequence = Column(BigInteger)
    witness = Column(Text)

    __table_args__ = (
        Index('idx_in_txid', 'txid'),
    )


class LockedEdge(Base):
    """``locked``: output -> address it pays to."""
    __tablename__ = 'locked_edges'

    output_id = Column(String(80), primary_key=True)
    address = Column(String(100), primary_key=True)

    __table_args__ = (
        Index('idx_locked_address', 'address'),
    )


class CoinbaseEdge(Base):
    """``coinbase``: block -> synthetic output feeding its coinbase transaction."""
    __tablename__ = 'coinbase_edges'

    block_hash = Column(String(64), primary_key=True)
    output_id = Column(String(80), primary_key=True)
