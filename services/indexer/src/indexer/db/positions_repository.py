"""Repository for materialized user positions."""

import logging
from datetime import datetime, timezone

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection, Engine

from services.indexer.src.indexer.db.engine import transaction
from services.indexer.src.indexer.db.models import user_positions
from services.indexer.src.indexer.domain.models import PositionUpdate, UserPosition

logger = logging.getLogger(__name__)


class PositionsRepository:
    def __init__(self, engine: Engine):
        self.engine = engine

    def apply_update(
        self,
        user_address: str,
        asset: str,
        change: PositionUpdate,
        conn: Connection | None = None,
    ) -> UserPosition:
        """
        Add signed deltas to a (user, asset) position, creating it from zero if absent.

        The row is read with FOR UPDATE so concurrent writers on PostgreSQL serialize on it;
        SQLite already serializes writers per database.

        Args:
            user_address: Lowercased user address
            asset: Lowercased asset address
            change: Deltas to add; is_collateral is only written when not None
            conn: Optional connection whose transaction the upsert joins

        Returns:
            The position as stored after the update
        """
        now = datetime.now(timezone.utc)
        supplied_delta = change.supplied_delta or 0
        borrowed_delta = change.borrowed_delta or 0

        with transaction(self.engine, conn) as c:
            existing = c.execute(
                select(user_positions)
                .where(user_positions.c.user_address == user_address)
                .where(user_positions.c.asset == asset)
                .with_for_update()
            ).fetchone()

            if existing is None:
                position = UserPosition(
                    user_address=user_address,
                    asset=asset,
                    supplied_balance=supplied_delta,
                    borrowed_balance=borrowed_delta,
                    is_collateral=True if change.is_collateral is None else change.is_collateral,
                    updated_at=now,
                )
                c.execute(
                    insert(user_positions).values(
                        user_address=position.user_address,
                        asset=position.asset,
                        supplied_balance=position.supplied_balance,
                        borrowed_balance=position.borrowed_balance,
                        is_collateral=position.is_collateral,
                        updated_at=now,
                    )
                )
            else:
                position = UserPosition(
                    user_address=user_address,
                    asset=asset,
                    supplied_balance=existing.supplied_balance + supplied_delta,
                    borrowed_balance=existing.borrowed_balance + borrowed_delta,
                    is_collateral=(
                        existing.is_collateral
                        if change.is_collateral is None
                        else change.is_collateral
                    ),
                    health_factor=_hf_to_str(existing.health_factor),
                    updated_at=now,
                )
                c.execute(
                    update(user_positions)
                    .where(user_positions.c.id == existing.id)
                    .values(
                        supplied_balance=position.supplied_balance,
                        borrowed_balance=position.borrowed_balance,
                        is_collateral=position.is_collateral,
                        updated_at=now,
                    )
                )

        if position.supplied_balance < 0 or position.borrowed_balance < 0:
            logger.warning(
                f"Negative balance for {user_address}/{asset}: "
                f"supplied={position.supplied_balance} borrowed={position.borrowed_balance}"
            )
        return position

    def get_position(self, user_address: str, asset: str) -> UserPosition | None:
        stmt = (
            select(user_positions)
            .where(user_positions.c.user_address == user_address.lower())
            .where(user_positions.c.asset == asset.lower())
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
            return _row_to_position(row) if row is not None else None

    def get_positions(self, user_address: str) -> list[UserPosition]:
        """Get all positions for a user (address matched case-insensitively)."""
        stmt = (
            select(user_positions)
            .where(user_positions.c.user_address == user_address.lower())
            .order_by(user_positions.c.asset)
        )
        with self.engine.connect() as conn:
            return [_row_to_position(row) for row in conn.execute(stmt)]


def _hf_to_str(value) -> str | None:
    return str(value) if value is not None else None


def _row_to_position(row) -> UserPosition:
    return UserPosition(
        user_address=row.user_address,
        asset=row.asset,
        supplied_balance=row.supplied_balance,
        borrowed_balance=row.borrowed_balance,
        is_collateral=bool(row.is_collateral),
        health_factor=_hf_to_str(row.health_factor),
        updated_at=row.updated_at,
    )
