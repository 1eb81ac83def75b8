import logging

from apscheduler.schedulers.base import BaseScheduler
from sqlalchemy.engine import Engine

from services.indexer.src.indexer.adapters.lending_pool.decoder import EventDecoder
from services.indexer.src.indexer.adapters.lending_pool.rpc import RpcLogSource
from services.indexer.src.indexer.config import Settings
from services.indexer.src.indexer.db.checkpoint_repository import CheckpointRepository
from services.indexer.src.indexer.db.events_repository import EventsRepository
from services.indexer.src.indexer.db.positions_repository import PositionsRepository
from services.indexer.src.indexer.db.repository import MarketSnapshotRepository
from services.indexer.src.indexer.indexing.event_indexer import EventIndexer
from services.indexer.src.indexer.indexing.processor import EventProcessor
from services.indexer.src.indexer.indexing.snapshot_job import SnapshotJob

logger = logging.getLogger(__name__)


class IndexerFactory:
    """Builds the indexer and snapshot job from settings, sharing one log source and engine."""

    def __init__(
        self,
        settings: Settings,
        engine: Engine,
        scheduler: BaseScheduler | None = None,
        log_source: RpcLogSource | None = None,
    ):
        self.settings = settings
        self.engine = engine
        self.scheduler = scheduler
        self.log_source = log_source or RpcLogSource(
            settings.rpc_url,
            scheduler=scheduler,
            poll_interval_seconds=settings.live_poll_interval_seconds,
            timeout=settings.rpc_timeout_seconds,
            max_attempts=settings.rpc_max_attempts,
            max_block_range=settings.backfill_batch_size,
        )

    def create_processor(self) -> EventProcessor:
        return EventProcessor(
            self.engine,
            EventsRepository(self.engine),
            PositionsRepository(self.engine),
        )

    def create_event_indexer(self) -> EventIndexer:
        return EventIndexer(
            log_source=self.log_source,
            decoder=EventDecoder(),
            processor=self.create_processor(),
            checkpoints=CheckpointRepository(self.engine),
            chain_id=self.settings.chain_id,
            contract_address=self.settings.lending_pool_address,
            batch_size=self.settings.backfill_batch_size,
            scheduler=self.scheduler,
            retry_seconds=self.settings.backfill_retry_seconds,
            live_error_policy=self.settings.live_error_policy,
        )

    def create_snapshot_job(self) -> SnapshotJob | None:
        """Return None when the UI data provider or pool address is not configured."""
        if not self.settings.ui_data_provider_address:
            logger.warning("UI data provider address not configured, skipping snapshot job")
            return None
        if not self.settings.lending_pool_address:
            logger.warning("LendingPool address not configured, skipping snapshot job")
            return None
        return SnapshotJob(
            log_source=self.log_source,
            repository=MarketSnapshotRepository(self.engine),
            ui_data_provider_address=self.settings.ui_data_provider_address,
            lending_pool_address=self.settings.lending_pool_address,
            scheduler=self.scheduler,
            interval_ms=self.settings.snapshot_interval_ms,
        )
