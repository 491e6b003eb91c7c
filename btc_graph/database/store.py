"""Graph store: idempotent persistence of blocks, transactions and their edges.

Every write operation is a merge (create if absent, update in place if
present), so repeated, concurrent or out-of-order application converges on the
same state. Each public method runs in its own session transaction and rolls
back on any failure; storage errors surface as StoreWriteError and the caller
retries the whole unit.
"""

from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

import structlog
from sqlalchemy import create_engine, func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from btc_graph.exceptions import StoreWriteError
from btc_graph.models.config import IndexerConfig
from btc_graph.models.records import (
    BlockRecord,
    GENESIS_PREV_HASH,
    TransactionRecord,
    coinbase_output_id,
    outpoint_id,
)
from btc_graph.database.models import (
    Base,
    AddressNode,
    BlockNode,
    ChainEdge,
    CoinbaseEdge,
    InEdge,
    IncEdge,
    LockedEdge,
    OutEdge,
    OutputNode,
    TransactionNode,
)

logger = structlog.get_logger(__name__)


class GraphStore:
    """Owns the database engine and exposes the named graph operations."""

    def __init__(self, config: IndexerConfig):
        self.config = config
        self.logger = logger.bind(component="graph_store")
        self.max_walk_depth = config.height_propagation_max_depth

        url = config.database_url
        if url.startswith("sqlite"):
            self.engine = create_engine(
                url,
                connect_args={"check_same_thread": False, "timeout": 30},
            )
        else:
            self.engine = create_engine(
                url,
                poolclass=QueuePool,
                pool_size=config.db_pool_size,
                max_overflow=config.db_max_overflow,
                pool_pre_ping=True,
            )

        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine
        )

        self.logger.info("Graph store initialized", backend=self.engine.dialect.name)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Create node/edge tables, uniqueness constraints and indexes."""
        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            raise StoreWriteError(f"Failed to create schema: {e}") from e
        self.logger.info("Graph schema initialized",
                         tables=sorted(Base.metadata.tables.keys()))

    def test_connection(self) -> bool:
        """Test database connection."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            self.logger.info("Database connection successful")
            return True
        except SQLAlchemyError as e:
            self.logger.error("Database connection failed", error=str(e))
            return False

    def close(self) -> None:
        """Close database connections."""
        self.engine.dispose()
        self.logger.info("Database connections closed")

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Transactional unit: commit on success, rollback on every failure path."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreWriteError(str(e)) from e
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Block writes
    # ------------------------------------------------------------------

    def upsert_block(self, record: BlockRecord,
                     anchor_height: Optional[int] = None) -> Dict[str, Any]:
        """Merge a block header and its chain edge.

        Returns ``{'height': ..., 'prev_hash': ...}``; height is None when the
        parent is not yet stored with a height and no ``anchor_height`` is given.
        """
        with self.session_scope() as session:
            return self._upsert_block(session, record, anchor_height)

    def upsert_transaction(self, record: TransactionRecord) -> Optional[int]:
        """Merge a regular transaction with its in/out/locked edges.

        Returns the fee in satoshis, or None while some input value is unknown
        or when the including block is not stored.
        """
        if record.is_coinbase:
            raise ValueError(f"{record.txid} is a coinbase transaction")
        with self.session_scope() as session:
            return self._upsert_transaction(session, record)

    def upsert_coinbase_transaction(self, record: TransactionRecord) -> Optional[int]:
        """Merge a coinbase transaction; its input hangs off the block's coinbase node."""
        if not record.is_coinbase:
            raise ValueError(f"{record.txid} is not a coinbase transaction")
        with self.session_scope() as session:
            return self._upsert_transaction(session, record)

    def store_block(self, block: BlockRecord,
                    transactions: Sequence[TransactionRecord],
                    anchor_height: Optional[int] = None) -> Dict[str, Any]:
        """Write a block and all of its transactions as one atomic unit.

        Transactions are applied in ascending ``index_in_block`` order.
        ``anchor_height`` is used only when the parent gives no height.
        """
        with self.session_scope() as session:
            result = self._upsert_block(session, block, anchor_height)
            fees = {}
            for tx in sorted(transactions, key=lambda t: t.index_in_block):
                fees[tx.txid] = self._upsert_transaction(session, tx)

        result['fees'] = fees
        self.logger.debug("Block stored",
                          hash=block.hash,
                          height=result['height'],
                          tx_count=len(transactions))
        return result

    def _upsert_block(self, session: Session, record: BlockRecord,
                      anchor_height: Optional[int] = None) -> Dict[str, Any]:
        if record.is_genesis:
            height = 0
        else:
            height = self._child_height(session.get(BlockNode, record.prev_hash))

        if height is None:
            existing = session.get(BlockNode, record.hash)
            if anchor_height is not None:
                height = anchor_height
            elif existing is not None and not existing.stale:
                # re-merging an anchored block keeps its height
                height = existing.height

        self._merge(session, BlockNode, {'hash': record.hash},
                    prev_hash=record.prev_hash,
                    height=height,
                    size=record.size,
                    tx_count=record.tx_count,
                    version=record.version,
                    merkle_root=record.merkle_root,
                    time=record.time,
                    bits=record.bits,
                    nonce=record.nonce,
                    stale=False)

        if not record.is_genesis:
            self._merge(session, ChainEdge,
                        {'block_hash': record.hash, 'parent_hash': record.prev_hash})

        coinbase_id = coinbase_output_id(record.hash)
        self._merge(session, OutputNode, {'id': coinbase_id}, is_coinbase=True)
        self._merge(session, CoinbaseEdge, {'block_hash': record.hash, 'output_id': coinbase_id})

        return {'height': height, 'prev_hash': record.prev_hash}

    def _upsert_transaction(self, session: Session, record: TransactionRecord) -> Optional[int]:
        block = session.get(BlockNode, record.block_hash)
        if block is None:
            self.logger.warning("Including block not stored, transaction skipped",
                                txid=record.txid, block_hash=record.block_hash)
            return None

        tx = self._merge(session, TransactionNode, {'txid': record.txid},
                         block_hash=record.block_hash,
                         index_in_block=record.index_in_block,
                         version=record.version,
                         locktime=record.locktime,
                         size=record.size,
                         is_coinbase=record.is_coinbase,
                         output_total=record.output_total)
        self._merge(session, IncEdge, {'txid': record.txid, 'block_hash': record.block_hash},
                    i=record.index_in_block)

        for tx_input in record.inputs:
            if record.is_coinbase:
                output_id = coinbase_output_id(record.block_hash)
                spent_output = self._merge(session, OutputNode, {'id': output_id},
                                           is_coinbase=True)
            else:
                output_id = tx_input.output_id
                spent_output = self._merge(session, OutputNode, {'id': output_id},
                                           txid=tx_input.prev_txid,
                                           vout=tx_input.prev_vout)
            spent_output.spent = True
            self._merge(session, InEdge, {'output_id': output_id, 'txid': record.txid},
                        vin=tx_input.vin,
                        script_sig=tx_input.script_sig,
                        sequence=tx_input.sequence,
                        witness=tx_input.witness)

        created_ids = []
        for output in record.outputs:
            output_id = outpoint_id(record.txid, output.vout)
            created_ids.append(output_id)
            self._merge(session, OutputNode, {'id': output_id},
                        txid=record.txid,
                        vout=output.vout,
                        value=output.value,
                        script_pubkey=output.script_pubkey,
                        address=output.address)
            self._merge(session, OutEdge, {'txid': record.txid, 'output_id': output_id},
                        vout=output.vout)
            if output.address:
                self._merge(session, AddressNode, {'address': output.address})
                self._merge(session, LockedEdge, {'output_id': output_id, 'address': output.address})

        session.flush()
        tx.fee = 0 if record.is_coinbase else self._compute_fee(session, record.txid, record.output_total)

        # consumers stored before these outputs may now be fully resolved
        for consumer in self._consumers_of(session, created_ids, exclude=record.txid):
            consumer.fee = self._compute_fee(session, consumer.txid, consumer.output_total)

        return tx.fee

    def _compute_fee(self, session: Session, txid: str, output_total: int) -> Optional[int]:
        """sum(input values) - sum(output values), or None if any input is unresolved."""
        values = session.execute(
            select(OutputNode.value)
            .join(InEdge, InEdge.output_id == OutputNode.id)
            .where(InEdge.txid == txid)
        ).scalars().all()

        if not values or any(value is None for value in values):
            return None
        return sum(values) - output_total

    def _consumers_of(self, session: Session, output_ids: List[str],
                      exclude: str) -> List[TransactionNode]:
        if not output_ids:
            return []
        return list(session.execute(
            select(TransactionNode)
            .join(InEdge, InEdge.txid == TransactionNode.txid)
            .where(InEdge.output_id.in_(output_ids))
            .where(TransactionNode.txid != exclude)
            .where(TransactionNode.is_coinbase.is_(False))
        ).scalars().unique().all())

    @staticmethod
    def _merge(session: Session, model, identity: Dict[str, Any], **attrs):
        """Create-if-absent / update-if-present by natural identity."""
        obj = session.get(model, identity)
        if obj is None:
            obj = model(**identity, **attrs)
            session.add(obj)
            session.flush()
            return obj
        for key, value in attrs.items():
            if getattr(obj, key) != value:
                setattr(obj, key, value)
        return obj

    @staticmethod
    def _child_height(parent: Optional[BlockNode]) -> Optional[int]:
        if parent is None or parent.stale or parent.height is None:
            return None
        return parent.height + 1

    # ------------------------------------------------------------------
    # Block reads
    # ------------------------------------------------------------------

    def block_exists(self, block_hash: str) -> bool:
        """True if the block is stored on a live (non-stale) branch."""
        with self.session_scope() as session:
            block = session.get(BlockNode, block_hash)
            return block is not None and not block.stale

    def hash_at_height(self, height: int) -> Optional[str]:
        """Hash of the live block at ``height``, or None.

        When two live blocks share the height (a replay not yet finished, or a
        range imported over a fork), the one the highest live block descends
        from wins.
        """
        with self.session_scope() as session:
            candidates = session.execute(
                select(BlockNode.hash)
                .where(BlockNode.height == height)
                .where(BlockNode.stale.is_(False))
                .order_by(BlockNode.hash)
            ).scalars().all()

            if len(candidates) <= 1:
                return candidates[0] if candidates else None
            return self._best_chain_hash(session, height, candidates)

    def _best_chain_hash(self, session: Session, height: int, candidates: List[str]) -> str:
        tip = session.execute(
            select(BlockNode)
            .where(BlockNode.height.is_not(None))
            .where(BlockNode.stale.is_(False))
            .order_by(BlockNode.height.desc(), BlockNode.hash)
            .limit(1)
        ).scalar_one()

        block = tip
        depth = 0
        while block is not None and block.height is not None and block.height > height:
            if depth >= self.max_walk_depth:
                break
            block = session.get(BlockNode, block.prev_hash)
            depth += 1

        if block is not None and block.hash in candidates:
            return block.hash

        self.logger.warning("Competing blocks at height, none on the best chain",
                            height=height, candidates=candidates)
        return candidates[0]

    def orphan_blocks(self) -> List[Dict[str, str]]:
        """Live blocks still waiting for a height."""
        with self.session_scope() as session:
            rows = session.execute(
                select(BlockNode.hash, BlockNode.prev_hash)
                .where(BlockNode.height.is_(None))
                .where(BlockNode.stale.is_(False))
                .order_by(BlockNode.hash)
            ).all()
            return [{'hash': row.hash, 'prev_hash': row.prev_hash} for row in rows]

    def get_block(self, block_hash: str) -> Optional[Dict[str, Any]]:
        with self.session_scope() as session:
            block = session.get(BlockNode, block_hash)
            if block is None:
                return None
            return {
                'hash': block.hash,
                'prev_hash': block.prev_hash,
                'height': block.height,
                'size': block.size,
                'tx_count': block.tx_count,
                'version': block.version,
                'merkle_root': block.merkle_root,
                'time': block.time,
                'bits': block.bits,
                'nonce': block.nonce,
                'stale': block.stale,
            }

    def get_transaction(self, txid: str) -> Optional[Dict[str, Any]]:
        with self.session_scope() as session:
            tx = session.get(TransactionNode, txid)
            if tx is None:
                return None
            return {
                'txid': tx.txid,
                'block_hash': tx.block_hash,
                'index_in_block': tx.index_in_block,
                'version': tx.version,
                'locktime': tx.locktime,
                'size': tx.size,
                'is_coinbase': tx.is_coinbase,
                'output_total': tx.output_total,
                'fee': tx.fee,
            }

    def get_output(self, output_id: str) -> Optional[Dict[str, Any]]:
        with self.session_scope() as session:
            output = session.get(OutputNode, output_id)
            if output is None:
                return None
            return {
                'id': output.id,
                'txid': output.txid,
                'vout': output.vout,
                'value': output.value,
                'script_pubkey': output.script_pubkey,
                'address': output.address,
                'spent': output.spent,
            }

    def block_transactions(self, block_hash: str) -> List[str]:
        """Txids included in a block, in block order."""
        with self.session_scope() as session:
            return list(session.execute(
                select(IncEdge.txid)
                .where(IncEdge.block_hash == block_hash)
                .order_by(IncEdge.i)
            ).scalars().all())

    def contiguous_height(self, start_height: int) -> Optional[int]:
        """Highest h >= start_height with every height in [start_height, h] stored.

        None when nothing is stored at ``start_height``.
        """
        with self.session_scope() as session:
            heights = session.execute(
                select(BlockNode.height)
                .where(BlockNode.height >= start_height)
                .where(BlockNode.stale.is_(False))
                .distinct()
                .order_by(BlockNode.height)
            ).scalars().all()

        last = None
        expected = start_height
        for height in heights:
            if height != expected:
                break
            last = height
            expected += 1
        return last

    def max_height(self) -> Optional[int]:
        with self.session_scope() as session:
            return session.execute(
                select(func.max(BlockNode.height)).where(BlockNode.stale.is_(False))
            ).scalar()

    def statistics(self) -> Dict[str, Any]:
        """Node counts and chain extent."""
        with self.session_scope() as session:
            def count(*criteria, model=BlockNode):
                query = select(func.count()).select_from(model)
                for criterion in criteria:
                    query = query.where(criterion)
                return session.execute(query).scalar() or 0

            return {
                'blocks': count(BlockNode.stale.is_(False)),
                'orphan_blocks': count(BlockNode.height.is_(None), BlockNode.stale.is_(False)),
                'stale_blocks': count(BlockNode.stale.is_(True)),
                'transactions': count(model=TransactionNode),
                'outputs': count(OutputNode.is_coinbase.is_(False), model=OutputNode),
                'unspent_outputs': count(OutputNode.is_coinbase.is_(False),
                                         OutputNode.spent.is_(False), model=OutputNode),
                'addresses': count(model=AddressNode),
                'max_height': session.execute(
                    select(func.max(BlockNode.height)).where(BlockNode.stale.is_(False))
                ).scalar(),
            }

    # ------------------------------------------------------------------
    # Height maintenance
    # ------------------------------------------------------------------

    def resolve_height_from_parent(self, block_hash: str) -> Optional[int]:
        """Set a block's height from its parent if the parent has one."""
        with self.session_scope() as session:
            block = session.get(BlockNode, block_hash)
            if block is None or block.stale:
                return None
            if block.prev_hash == GENESIS_PREV_HASH:
                block.height = 0
                return 0

            height = self._child_height(session.get(BlockNode, block.prev_hash))
            if height is not None and block.height != height:
                block.height = height
            return height

    def propagate_heights(self, from_hash: str) -> List[str]:
        """Cascade heights from a resolved block to every live descendant.

        Walks ``chain`` edges breadth-first, one generation per step, stopping
        at ``height_propagation_max_depth`` generations. Returns the hashes
        whose height changed.
        """
        with self.session_scope() as session:
            start = session.get(BlockNode, from_hash)
            if start is None or start.stale or start.height is None:
                return []

            updated = []
            frontier = {start.hash: start.height}
            depth = 0

            while frontier:
                if depth >= self.max_walk_depth:
                    self.logger.warning("Height propagation depth limit reached",
                                        from_hash=from_hash, depth=depth)
                    break

                next_frontier = {}
                for child, parent_hash in self._children(session, frontier.keys()):
                    expected = frontier[parent_hash] + 1
                    if child.height != expected:
                        child.height = expected
                        updated.append(child.hash)
                    next_frontier[child.hash] = expected

                frontier = next_frontier
                depth += 1

            return updated

    def mark_stale(self, block_hashes: Iterable[str]) -> List[str]:
        """Tag blocks and all their descendants as an abandoned branch.

        Stale blocks keep their transactions and edges but lose their height
        and are ignored by height lookups and orphan resolution.
        """
        with self.session_scope() as session:
            marked = []
            frontier = set(block_hashes)
            seen = set()
            depth = 0

            while frontier and depth < self.max_walk_depth:
                for block_hash in frontier:
                    block = session.get(BlockNode, block_hash)
                    if block is None or block.stale:
                        continue
                    block.stale = True
                    block.height = None
                    marked.append(block.hash)
                seen |= frontier

                children = session.execute(
                    select(ChainEdge.block_hash).where(ChainEdge.parent_hash.in_(list(frontier)))
                ).scalars().all()
                frontier = set(children) - seen
                depth += 1

            released = self._release_spends(session, marked) if marked else 0
            if marked:
                self.logger.info("Blocks marked stale", count=len(marked), released_outputs=released)
            return marked

    def _release_spends(self, session: Session, stale_hashes: List[str]) -> int:
        """Clear ``spent`` on outputs consumed only by transactions of stale blocks."""
        session.flush()
        stale_txids = select(IncEdge.txid).where(IncEdge.block_hash.in_(stale_hashes))
        still_spent = (
            select(InEdge.output_id)
            .join(IncEdge, IncEdge.txid == InEdge.txid)
            .join(BlockNode, BlockNode.hash == IncEdge.block_hash)
            .where(BlockNode.stale.is_(False))
        )
        outputs = session.execute(
            select(OutputNode)
            .join(InEdge, InEdge.output_id == OutputNode.id)
            .where(InEdge.txid.in_(stale_txids))
            .where(OutputNode.spent.is_(True))
            .where(OutputNode.id.not_in(still_spent))
        ).scalars().unique().all()

        for output in outputs:
            output.spent = False
        return len(outputs)

    def anchor_height(self, block_hash: str, height: int) -> bool:
        """Pin a stored block whose parent is not indexed to a known height.

        Only blocks still waiting for a height are changed. Returns True when
        the block ends up at ``height``.
        """
        with self.session_scope() as session:
            block = session.get(BlockNode, block_hash)
            if block is None or block.stale:
                return False
            if block.height is None:
                block.height = height
                self.logger.info("Block height anchored", hash=block_hash, height=height)
            elif block.height != height:
                self.logger.warning("Anchor height differs from stored height",
                                    hash=block_hash, stored=block.height, anchor=height)
            return block.height == height

    def reset_genesis_height(self) -> List[str]:
        """Force every sentinel-parent block to height 0."""
        with self.session_scope() as session:
            blocks = session.execute(
                select(BlockNode).where(BlockNode.prev_hash == GENESIS_PREV_HASH)
            ).scalars().all()
            for block in blocks:
                block.height = 0
                block.stale = False
            return [block.hash for block in blocks]

    def _children(self, session: Session, parent_hashes: Iterable[str]):
        """Live children of the given parents as (BlockNode, parent_hash) pairs."""
        rows = session.execute(
            select(BlockNode, ChainEdge.parent_hash)
            .join(ChainEdge, ChainEdge.block_hash == BlockNode.hash)
            .where(ChainEdge.parent_hash.in_(list(parent_hashes)))
            .where(BlockNode.stale.is_(False))
        ).all()
        return [(row[0], row[1]) for row in rows]
