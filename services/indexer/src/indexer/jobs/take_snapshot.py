"""
Market snapshot job - records one snapshot of every market and exits.

Usage:
    python -m services.indexer.src.indexer.jobs.take_snapshot
"""
import argparse
import logging
import sys

from services.indexer.src.indexer.adapters.lending_pool.rpc import RpcLogSource
from services.indexer.src.indexer.config import settings
from services.indexer.src.indexer.db.engine import get_engine, init_db
from services.indexer.src.indexer.indexing.factory import IndexerFactory

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def take_snapshot(
    database_url: str | None = None,
    log_source: RpcLogSource | None = None,
) -> int:
    """
    Take a single market snapshot.

    Returns:
        Number of snapshot rows written
    """
    engine = get_engine(database_url)
    init_db(engine)

    job = IndexerFactory(settings, engine, log_source=log_source).create_snapshot_job()
    if job is None:
        raise ValueError("UI_DATA_PROVIDER_ADDRESS and LENDING_POOL_ADDRESS must be configured")

    return job.take_snapshot()


def main() -> int:
    parser = argparse.ArgumentParser(description="Record one market snapshot")
    parser.add_argument(
        "--database-url",
        type=str,
        default=None,
        help="Database URL (default: from settings)",
    )

    args = parser.parse_args()

    try:
        count = take_snapshot(args.database_url)
        logger.info(f"Snapshot complete: {count} markets")
        return 0
    except Exception as e:
        logger.error(f"Snapshot failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
