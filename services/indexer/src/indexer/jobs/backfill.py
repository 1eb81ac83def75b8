"""
LendingPool backfill job - applies historical events for a bounded block range.

Usage:
    python -m services.indexer.src.indexer.jobs.backfill
    python -m services.indexer.src.indexer.jobs.backfill --from-block 100 --to-block 5000
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


def run_backfill(
    from_block: int | None = None,
    to_block: int | None = None,
    database_url: str | None = None,
    log_source: RpcLogSource | None = None,
) -> int:
    """
    Backfill LendingPool events into the database.

    Args:
        from_block: First block (default: block after the stored checkpoint)
        to_block: Last block (default: current chain head)
        database_url: Optional database URL override
        log_source: Optional log source override (default: JSON-RPC from settings)

    Returns:
        Number of events applied
    """
    if not settings.lending_pool_address:
        raise ValueError("LENDING_POOL_ADDRESS is not configured")

    engine = get_engine(database_url)
    init_db(engine)

    indexer = IndexerFactory(settings, engine, log_source=log_source).create_event_indexer()

    if from_block is None:
        from_block = indexer.last_processed_block() + 1
    if to_block is None:
        to_block = indexer.log_source.get_block_number()

    applied = indexer.backfill(from_block, to_block)
    logger.info(f"Backfill complete: {applied} events applied, checkpoint at {indexer.last_processed_block()}")
    return applied


def main() -> int:
    parser = argparse.ArgumentParser(description="Backfill LendingPool events from the chain")
    parser.add_argument(
        "--from-block",
        type=int,
        default=None,
        help="First block to index (default: checkpoint + 1)",
    )
    parser.add_argument(
        "--to-block",
        type=int,
        default=None,
        help="Last block to index (default: chain head)",
    )
    parser.add_argument(
        "--database-url",
        type=str,
        default=None,
        help="Database URL (default: from settings)",
    )

    args = parser.parse_args()

    try:
        run_backfill(args.from_block, args.to_block, args.database_url)
        return 0
    except Exception as e:
        logger.error(f"Backfill failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
