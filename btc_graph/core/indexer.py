"""Wires provider, store and engine components into one indexer."""

from typing import Any, Dict, List, Optional

import structlog

from btc_graph.core.heights import HeightPropagator, OrphanResolution, OrphanResolver
from btc_graph.core.ingestion import BatchIngestionEngine, IngestionReport
from btc_graph.core.normalizer import RecordNormalizer
from btc_graph.core.reorg import ReorgDetector, ReorgResult
from btc_graph.core.rpc_client import BitcoinRPCClient, ChainDataProvider
from btc_graph.core.scheduler import SyncScheduler
from btc_graph.database.store import GraphStore
from btc_graph.models.config import IndexerConfig
from btc_graph.utils.logging import setup_logging

logger = structlog.get_logger(__name__)


class ChainIndexer:
    """Main indexer: owns the provider client and the store handle."""

    def __init__(self, config: IndexerConfig,
                 provider: Optional[ChainDataProvider] = None,
                 store: Optional[GraphStore] = None):
        self.config = config
        setup_logging(config)
        self.logger = logger.bind(component="chain_indexer")

        self.provider = provider or BitcoinRPCClient(config)
        self.store = store or GraphStore(config)

        self.propagator = HeightPropagator(self.store)
        self.orphan_resolver = OrphanResolver(self.store, self.propagator)
        self.engine = BatchIngestionEngine(
            self.provider,
            self.store,
            normalizer=RecordNormalizer(),
            orphan_resolver=self.orphan_resolver,
            batch_size=config.sync_batch_size,
            concurrency=config.sync_concurrency,
            base_delay=config.sync_stagger_delay,
            store_retry_attempts=config.store_retry_attempts,
        )
        self.reorg_detector = ReorgDetector(
            self.provider, self.store, self.engine, max_depth=config.reorg_max_depth
        )
        self.scheduler = SyncScheduler(
            self.provider, self.store, self.engine, self.orphan_resolver, self.reorg_detector
        )

        self.logger.info("Chain indexer initialized")

    def __enter__(self) -> "ChainIndexer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def initialize(self) -> None:
        """Create the graph schema (constraints and indexes)."""
        self.store.initialize()

    def import_range(self, start_height: int, end_height: int,
                     anchor: bool = False) -> IngestionReport:
        return self.engine.ingest_range(start_height, end_height, anchor_start=anchor)

    def sync(self, start_height: int, poll_interval: Optional[float] = None,
             max_ticks: Optional[int] = None) -> None:
        interval = poll_interval if poll_interval is not None else self.config.sync_poll_interval
        self.scheduler.run(start_height, interval, max_ticks=max_ticks)

    def detect_reorg(self, start_height: int, end_height: Optional[int] = None) -> List[ReorgResult]:
        end = start_height if end_height is None else end_height
        return self.reorg_detector.check_range(start_height, end)

    def resolve_orphans(self) -> OrphanResolution:
        return self.orphan_resolver.resolve()

    def fix_heights(self) -> OrphanResolution:
        return self.orphan_resolver.repair()

    def status(self) -> Dict[str, Any]:
        """Store statistics plus the provider tip when reachable."""
        stats = self.store.statistics()
        try:
            stats['provider_tip'] = self.provider.get_tip()
        except Exception as e:
            self.logger.warning("Provider tip unavailable", error=str(e))
            stats['provider_tip'] = None
        if stats['provider_tip'] is not None and stats['max_height'] is not None:
            stats['blocks_behind'] = max(0, stats['provider_tip'] - stats['max_height'])
        return stats

    def close(self) -> None:
        """Close all connections and cleanup."""
        self.logger.info("Shutting down chain indexer...")
        try:
            close_provider = getattr(self.provider, 'close', None)
            if close_provider is not None:
                close_provider()
        finally:
            self.store.close()
        self.logger.info("Chain indexer shutdown complete")
