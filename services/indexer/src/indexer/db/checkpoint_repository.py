"""Durable (chain_id -> last processed block) checkpoints."""

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine

from services.indexer.src.indexer.db.engine import is_sqlite
from services.indexer.src.indexer.db.models import indexer_checkpoints


class CheckpointRepository:
    def __init__(self, engine: Engine):
        self.engine = engine
        self._is_sqlite = is_sqlite(engine)

    def get_last_processed_block(self, chain_id: int) -> int | None:
        """
        Get the checkpoint for a chain.

        Returns:
            The highest fully applied block, or None if nothing was ever checkpointed
        """
        stmt = select(indexer_checkpoints.c.last_processed_block).where(
            indexer_checkpoints.c.chain_id == chain_id
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
            if row is None or row[0] is None:
                return None
            return int(row[0])

    def save_checkpoint(self, chain_id: int, block_number: int) -> int:
        """
        Upsert the checkpoint, never moving it backwards.

        Returns:
            The stored checkpoint after the write
        """
        insert = sqlite_insert if self._is_sqlite else pg_insert
        now = datetime.now(timezone.utc)
        stmt = insert(indexer_checkpoints).values(
            chain_id=chain_id,
            last_processed_block=block_number,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["chain_id"],
            set_={
                "last_processed_block": stmt.excluded.last_processed_block,
                "updated_at": stmt.excluded.updated_at,
            },
            where=indexer_checkpoints.c.last_processed_block < stmt.excluded.last_processed_block,
        )

        with self.engine.begin() as conn:
            conn.execute(stmt)
            row = conn.execute(
                select(indexer_checkpoints.c.last_processed_block).where(
                    indexer_checkpoints.c.chain_id == chain_id
                )
            ).fetchone()
            return int(row[0])
