"""Chain reorganization detection and recovery."""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import structlog

from btc_graph.core.ingestion import BatchIngestionEngine, IngestionReport
from btc_graph.core.rpc_client import ChainDataProvider
from btc_graph.database.store import GraphStore
from btc_graph.exceptions import ConsistencyError

logger = structlog.get_logger(__name__)


@dataclass
class ReorgResult:
    """Outcome of a reorg check at one height."""
    height: int
    reorganized: bool = False
    provider_hash: Optional[str] = None
    stored_hash: Optional[str] = None
    fork_height: Optional[int] = None
    steps: int = 0
    stale_blocks: List[str] = field(default_factory=list)
    report: Optional[IngestionReport] = None


class ReorgDetector:
    """Compares stored and canonical hashes and replays the diverged suffix."""

    def __init__(self, provider: ChainDataProvider, store: GraphStore,
                 engine: BatchIngestionEngine, max_depth: Optional[int] = None):
        self.provider = provider
        self.store = store
        self.engine = engine
        self.max_depth = max_depth
        self.logger = logger.bind(component="reorg_detector")

    def check(self, height: int) -> ReorgResult:
        """
        Detect and resolve a reorganization at ``height``.

        When the stored hash differs from the provider's, walks down to the
        highest height where both agree, re-ingests the canonical blocks up to
        ``height`` and then tags the stored branch above the fork point stale.

        Raises:
            ConsistencyError: no common ancestor down to genesis (or max_depth)
        """
        provider_hash = self.provider.get_hash(height)
        stored_hash = self.store.hash_at_height(height)
        result = ReorgResult(height=height, provider_hash=provider_hash, stored_hash=stored_hash)

        if stored_hash is None:
            self.logger.info("No stored block at height", height=height)
            return result

        if stored_hash == provider_hash:
            self.logger.debug("No reorganization detected", height=height)
            return result

        self.logger.warning("Reorganization detected",
                            height=height,
                            provider_hash=provider_hash,
                            stored_hash=stored_hash)

        fork_height, steps, divergent = self.find_fork_point(height, stored_hash)
        result.reorganized = True
        result.fork_height = fork_height
        result.steps = steps

        self.logger.info("Fork point found", fork_height=fork_height, steps=steps)

        # the stored branch stays live until the replay has succeeded
        result.report = self.engine.ingest_range(fork_height + 1, height)
        result.stale_blocks = self.store.mark_stale(divergent)

        replaced = self.store.hash_at_height(height)
        if replaced != provider_hash:
            self.logger.warning("Stored hash still differs after replay",
                                height=height, stored_hash=replaced, provider_hash=provider_hash)
        else:
            self.logger.info("Reorganization resolved",
                             height=height,
                             fork_height=fork_height,
                             replayed=len(result.report.stored),
                             stale=len(result.stale_blocks))
        return result

    def find_fork_point(self, height: int, stored_hash: str) -> Tuple[int, int, List[str]]:
        """Walk down from ``height`` until provider and store agree.

        Returns ``(fork_height, steps, divergent_hashes)`` where the divergent
        hashes are the stored blocks above the fork point.
        """
        divergent = [stored_hash]
        current = height
        steps = 0

        while current > 0:
            if self.max_depth is not None and steps >= self.max_depth:
                raise ConsistencyError(
                    f"No common ancestor within {self.max_depth} blocks below height {height}"
                )

            current -= 1
            steps += 1

            canonical = self.provider.get_hash(current)
            stored = self.store.hash_at_height(current)

            if stored == canonical:
                return current, steps, divergent

            if stored is not None:
                divergent.append(stored)

        raise ConsistencyError(
            f"No common ancestor between stored chain and provider down to genesis "
            f"(checked from height {height}); wrong network or corrupted store"
        )

    def check_range(self, start_height: int, end_height: int) -> List[ReorgResult]:
        """Run ``check`` for every height in the inclusive range."""
        results = []
        for height in range(start_height, end_height + 1):
            result = self.check(height)
            results.append(result)
            if result.reorganized:
                self.logger.info("Reorganization handled", height=height)

        if not any(r.reorganized for r in results):
            self.logger.info("No reorganization detected in range",
                             start=start_height, end=end_height)
        return results
