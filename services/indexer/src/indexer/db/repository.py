from datetime import datetime
from typing import Sequence

from sqlalchemy import func, insert, select
from sqlalchemy.engine import Engine

from services.indexer.src.indexer.db.models import market_snapshots
from services.indexer.src.indexer.domain.models import MarketSnapshot


class MarketSnapshotRepository:
    def __init__(self, engine: Engine):
        self.engine = engine

    def insert_snapshots(self, snapshots: Sequence[MarketSnapshot]) -> int:
        if not snapshots:
            return 0

        rows = []
        for s in snapshots:
            row = {
                "asset": s.asset,
                "symbol": s.symbol,
                "total_supplied": s.total_supplied,
                "total_borrowed": s.total_borrowed,
                "supply_rate": s.supply_rate,
                "borrow_rate": s.borrow_rate,
                "utilization": s.utilization,
                "price_usd": s.price_usd,
                "snapshot_at": s.snapshot_at,
            }
            rows.append(row)

        with self.engine.begin() as conn:
            conn.execute(insert(market_snapshots), rows)
        return len(rows)

    def get_latest_by_asset(self) -> dict[str, MarketSnapshot]:
        """Latest snapshot per asset, keyed by asset address."""
        latest = (
            select(
                market_snapshots.c.asset,
                func.max(market_snapshots.c.id).label("max_id"),
            )
            .group_by(market_snapshots.c.asset)
            .subquery()
        )
        stmt = select(market_snapshots).join(
            latest, market_snapshots.c.id == latest.c.max_id
        )

        with self.engine.connect() as conn:
            return {row.asset: _row_to_snapshot(row) for row in conn.execute(stmt)}

    def get_snapshots(
        self,
        from_time: datetime,
        to_time: datetime,
        asset: str | None = None,
    ) -> list[MarketSnapshot]:
        stmt = (
            select(market_snapshots)
            .where(market_snapshots.c.snapshot_at >= from_time)
            .where(market_snapshots.c.snapshot_at <= to_time)
        )
        if asset:
            stmt = stmt.where(market_snapshots.c.asset == asset.lower())
        stmt = stmt.order_by(market_snapshots.c.snapshot_at, market_snapshots.c.id)

        with self.engine.connect() as conn:
            return [_row_to_snapshot(row) for row in conn.execute(stmt)]


def _row_to_snapshot(row) -> MarketSnapshot:
    return MarketSnapshot(
        asset=row.asset,
        symbol=row.symbol,
        total_supplied=row.total_supplied,
        total_borrowed=row.total_borrowed,
        supply_rate=row.supply_rate,
        borrow_rate=row.borrow_rate,
        utilization=row.utilization,
        price_usd=row.price_usd,
        snapshot_at=row.snapshot_at,
    )
