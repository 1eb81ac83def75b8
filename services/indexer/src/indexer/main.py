import logging
import os
from contextlib import asynccontextmanager

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI

from services.indexer.src.indexer.config import settings
from services.indexer.src.indexer.db.engine import get_engine, init_db
from services.indexer.src.indexer.indexing.event_indexer import EventIndexer
from services.indexer.src.indexer.indexing.factory import IndexerFactory
from services.indexer.src.indexer.indexing.snapshot_job import SnapshotJob
from services.indexer.src.indexer.schemas import HealthResponse

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Global instances, set by the lifespan
scheduler: BackgroundScheduler | None = None
indexer: EventIndexer | None = None
snapshot_job: SnapshotJob | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the indexer and snapshot job on startup, stop them on shutdown."""
    global scheduler, indexer, snapshot_job

    if os.getenv("ENABLE_INDEXER", "true").lower() == "true":
        engine = get_engine()
        init_db(engine)

        scheduler = BackgroundScheduler()
        scheduler.start()

        factory = IndexerFactory(settings, engine, scheduler)
        indexer = factory.create_event_indexer()
        snapshot_job = factory.create_snapshot_job()

        # Backfill can take a while; run it off the startup path
        indexer.start_in_background()
        logger.info("Indexer start scheduled")

        if snapshot_job is not None:
            snapshot_job.start()

    yield

    if snapshot_job is not None:
        snapshot_job.stop()
    if indexer is not None:
        indexer.stop()
    if scheduler is not None:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler shutdown complete")


app = FastAPI(title="Lending Protocol Indexer", lifespan=lifespan)


@app.get("/")
def root() -> dict[str, str]:
    return {"service": "lending-indexer", "docs": "/docs"}


@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    if indexer is None:
        return HealthResponse(status="ok", indexer_state="disabled", chain_id=settings.chain_id)

    return HealthResponse(
        status="ok",
        indexer_state=indexer.state.value,
        chain_id=indexer.chain_id,
        last_processed_block=indexer.checkpoints.get_last_processed_block(indexer.chain_id),
        snapshots_enabled=snapshot_job is not None,
    )
