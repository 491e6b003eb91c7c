"""Height assignment for blocks stored before their parent."""

from dataclasses import dataclass, field
from typing import List, Optional

import structlog

from btc_graph.database.store import GraphStore

logger = structlog.get_logger(__name__)


@dataclass
class OrphanResolution:
    """Outcome of one resolver run."""
    resolved: List[str] = field(default_factory=list)
    remaining: int = 0
    passes: int = 0


class HeightPropagator:
    """Assigns a block's height from its parent and cascades it to descendants."""

    def __init__(self, store: GraphStore):
        self.store = store

    def assign(self, block_hash: str) -> Optional[int]:
        return self.store.resolve_height_from_parent(block_hash)

    def cascade(self, block_hash: str) -> List[str]:
        return self.store.propagate_heights(block_hash)


class OrphanResolver:
    """Re-attaches blocks whose parent was unknown when they were stored."""

    def __init__(self, store: GraphStore, propagator: Optional[HeightPropagator] = None,
                 max_passes: int = 100):
        self.store = store
        self.propagator = propagator or HeightPropagator(store)
        self.max_passes = max_passes
        self.logger = logger.bind(component="orphan_resolver")

    def resolve(self) -> OrphanResolution:
        """
        Give a height to every orphan whose parent now has one.

        Each resolved orphan's descendants are updated in the same step, so a
        chain of orphans O1 -> O2 -> O3 is fully resolved by one call. Passes
        repeat while at least one orphan advanced; a call with nothing
        resolvable performs a single read and changes nothing.
        """
        result = OrphanResolution()
        resolved = set()

        while result.passes < self.max_passes:
            orphans = self.store.orphan_blocks()
            result.passes += 1
            if not orphans:
                break

            self.logger.info("Resolving orphan blocks", count=len(orphans), pass_number=result.passes)

            progressed = False
            for orphan in orphans:
                height = self.propagator.assign(orphan['hash'])
                if height is None:
                    continue

                progressed = True
                for block_hash in [orphan['hash']] + self.propagator.cascade(orphan['hash']):
                    if block_hash not in resolved:
                        resolved.add(block_hash)
                        result.resolved.append(block_hash)

                self.logger.debug("Orphan block resolved", hash=orphan['hash'], height=height)

            if not progressed:
                break

        result.remaining = len(self.store.orphan_blocks())

        if result.resolved:
            self.logger.info("Orphan resolution complete",
                             resolved=len(result.resolved),
                             remaining=result.remaining)
        elif result.remaining:
            self.logger.debug("No orphan blocks resolvable yet", remaining=result.remaining)
        return result

    def repair(self) -> OrphanResolution:
        """Rebuild heights from genesis, then resolve what remains."""
        genesis_hashes = self.store.reset_genesis_height()
        if not genesis_hashes:
            self.logger.warning("Genesis block not stored; heights resolved from existing anchors only")

        for genesis_hash in genesis_hashes:
            updated = self.propagator.cascade(genesis_hash)
            self.logger.info("Heights rebuilt from genesis", hash=genesis_hash, updated=len(updated))

        return self.resolve()
