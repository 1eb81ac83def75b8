"""Repository for the append-only event and liquidation logs."""

from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine

from services.indexer.src.indexer.db.engine import is_sqlite, transaction
from services.indexer.src.indexer.db.models import events, liquidations
from services.indexer.src.indexer.domain.models import EventRecord, LiquidationRecord


class EventsRepository:
    """Insert-only access to `events` and `liquidations`, plus read helpers for the query layer."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._is_sqlite = is_sqlite(engine)

    def _insert_ignoring_duplicates(self, conn: Connection, table, row: dict) -> bool:
        insert = sqlite_insert if self._is_sqlite else pg_insert
        stmt = insert(table).values([row])
        stmt = stmt.on_conflict_do_nothing(index_elements=["tx_hash", "log_index"])
        result = conn.execute(stmt)
        return result.rowcount == 1

    def insert_event(self, record: EventRecord, conn: Connection | None = None) -> bool:
        """
        Insert one event row.

        Uses INSERT ... ON CONFLICT DO NOTHING on (tx_hash, log_index) so replays are no-ops.

        Args:
            record: The event to persist
            conn: Optional connection whose transaction the insert joins

        Returns:
            True if the row was inserted, False if it already existed
        """
        row = {
            "tx_hash": record.tx_hash,
            "block_number": record.block_number,
            "log_index": record.log_index,
            "event_name": record.event_name,
            "user_address": record.user_address,
            "asset": record.asset,
            "amount": record.amount,
            "raw_args_json": record.raw_args_json,
            "created_at": record.created_at or datetime.now(timezone.utc),
        }
        with transaction(self.engine, conn) as c:
            return self._insert_ignoring_duplicates(c, events, row)

    def insert_liquidation(
        self, record: LiquidationRecord, conn: Connection | None = None
    ) -> bool:
        row = {
            "tx_hash": record.tx_hash,
            "log_index": record.log_index,
            "liquidator": record.liquidator,
            "user_liquidated": record.user_liquidated,
            "collateral_asset": record.collateral_asset,
            "debt_asset": record.debt_asset,
            "debt_covered": record.debt_covered,
            "collateral_seized": record.collateral_seized,
            "created_at": record.created_at or datetime.now(timezone.utc),
        }
        with transaction(self.engine, conn) as c:
            return self._insert_ignoring_duplicates(c, liquidations, row)

    def get_events_by_user(
        self, user_address: str, limit: int = 50, offset: int = 0
    ) -> list[EventRecord]:
        """
        Get a page of events for a user, newest block first.

        Args:
            user_address: User address (any case)
            limit: Page size (default: 50)
            offset: Rows to skip

        Returns:
            List of EventRecord ordered by block number then log index, descending
        """
        stmt = (
            select(events)
            .where(events.c.user_address == user_address.lower())
            .order_by(events.c.block_number.desc(), events.c.log_index.desc())
            .limit(limit)
            .offset(offset)
        )

        with self.engine.connect() as conn:
            return [_row_to_event(row) for row in conn.execute(stmt)]

    def count_events(self, event_name: str | None = None) -> int:
        stmt = select(func.count()).select_from(events)
        if event_name:
            stmt = stmt.where(events.c.event_name == event_name)

        with self.engine.connect() as conn:
            return int(conn.execute(stmt).scalar_one())

    def get_liquidations(
        self,
        from_time: datetime | None = None,
        to_time: datetime | None = None,
        limit: int = 100,
    ) -> list[LiquidationRecord]:
        """Get liquidations in a time range, newest first."""
        stmt = select(liquidations)
        if from_time is not None:
            stmt = stmt.where(liquidations.c.created_at >= from_time)
        if to_time is not None:
            stmt = stmt.where(liquidations.c.created_at <= to_time)
        stmt = stmt.order_by(liquidations.c.created_at.desc(), liquidations.c.id.desc()).limit(limit)

        with self.engine.connect() as conn:
            return [
                LiquidationRecord(
                    tx_hash=row.tx_hash,
                    log_index=row.log_index,
                    liquidator=row.liquidator,
                    user_liquidated=row.user_liquidated,
                    collateral_asset=row.collateral_asset,
                    debt_asset=row.debt_asset,
                    debt_covered=row.debt_covered,
                    collateral_seized=row.collateral_seized,
                    created_at=row.created_at,
                )
                for row in conn.execute(stmt)
            ]


def _row_to_event(row) -> EventRecord:
    return EventRecord(
        tx_hash=row.tx_hash,
        block_number=int(row.block_number),
        log_index=row.log_index,
        event_name=row.event_name,
        user_address=row.user_address,
        asset=row.asset,
        amount=row.amount,
        raw_args_json=row.raw_args_json,
        created_at=row.created_at,
    )
