"""
Apply decoded LendingPool events to durable state.

Each event is written to the append-only `events` table and, in the same transaction,
folded into the (user, asset) position it touches. Replaying a log that is already
recorded is a no-op.
"""
import json
import logging
from typing import Any

from sqlalchemy.engine import Engine

from services.indexer.src.indexer.db.events_repository import EventsRepository
from services.indexer.src.indexer.db.positions_repository import PositionsRepository
from services.indexer.src.indexer.domain.models import (
    DecodedEvent,
    EventRecord,
    LiquidationRecord,
    PositionUpdate,
)

logger = logging.getLogger(__name__)

MAX_UINT256 = 2**256 - 1


class InvalidEventError(ValueError):
    """Raised when a decoded event carries a field that cannot be applied to the ledger."""

    def __init__(self, event: DecodedEvent, field: str, value: Any):
        self.field = field
        self.value = value
        super().__init__(
            f"{event.event_name} {event.log.tx_hash}:{event.log.log_index} "
            f"has invalid {field}: {value!r}"
        )


def parse_amount(event: DecodedEvent) -> int:
    """Extract `amount` as a uint256. Missing means zero; anything non-numeric is an error."""
    value = event.args.get("amount")
    if value is None:
        return 0
    # bool is an int subclass but never a valid amount
    if isinstance(value, bool):
        raise InvalidEventError(event, "amount", value)
    if isinstance(value, int):
        amount = value
    elif isinstance(value, str) and value.isascii() and value.strip().isdigit():
        amount = int(value)
    else:
        raise InvalidEventError(event, "amount", value)
    if not 0 <= amount <= MAX_UINT256:
        raise InvalidEventError(event, "amount", value)
    return amount


def _address(event: DecodedEvent, name: str) -> str:
    value = event.args.get(name)
    return value.lower() if isinstance(value, str) else ""


def _args_to_json(args: dict[str, Any]) -> str:
    # uint256 values do not fit JSON numbers; bools stay JSON booleans
    values = {
        name: str(value) if isinstance(value, int) and not isinstance(value, bool) else value
        for name, value in args.items()
    }
    return json.dumps(values, default=str, sort_keys=True)


def position_update_for(event_name: str, amount: int) -> PositionUpdate | None:
    """Map an event to the delta it applies to its position, or None for no mutation."""
    if event_name == "Supply":
        return PositionUpdate(supplied_delta=amount)
    if event_name == "Withdraw":
        return PositionUpdate(supplied_delta=-amount)
    if event_name == "Borrow":
        return PositionUpdate(borrowed_delta=amount)
    if event_name == "Repay":
        return PositionUpdate(borrowed_delta=-amount)
    if event_name == "Liquidate":
        # Collateral seizure from the liquidated user
        return PositionUpdate(supplied_delta=-amount)
    if event_name == "ReserveUsedAsCollateralEnabled":
        return PositionUpdate(is_collateral=True)
    if event_name == "ReserveUsedAsCollateralDisabled":
        return PositionUpdate(is_collateral=False)
    return None


class EventProcessor:
    def __init__(
        self,
        engine: Engine,
        events_repository: EventsRepository,
        positions_repository: PositionsRepository,
    ):
        self.engine = engine
        self.events = events_repository
        self.positions = positions_repository

    def process(self, event: DecodedEvent) -> bool:
        """
        Record one event and apply its position effect atomically.

        Args:
            event: A decoded LendingPool event

        Returns:
            True if applied, False if (tx_hash, log_index) was already recorded

        Raises:
            InvalidEventError: if the amount is malformed; nothing is written
        """
        log = event.log
        user_address = _address(event, "user")
        asset = _address(event, "asset")
        amount = parse_amount(event)
        raw_amount = event.args.get("amount")

        record = EventRecord(
            tx_hash=log.tx_hash,
            block_number=log.block_number,
            log_index=log.log_index,
            event_name=event.event_name,
            user_address=user_address or None,
            asset=asset or None,
            amount=str(amount) if raw_amount is not None else None,
            raw_args_json=_args_to_json(event.args),
        )

        with self.engine.begin() as conn:
            if not self.events.insert_event(record, conn=conn):
                logger.debug(
                    f"Skipping already processed {event.event_name} {log.tx_hash}:{log.log_index}"
                )
                return False

            if event.event_name == "Liquidate":
                self.events.insert_liquidation(
                    LiquidationRecord(
                        tx_hash=log.tx_hash,
                        log_index=log.log_index,
                        liquidator=_address(event, "liquidator"),
                        user_liquidated=user_address,
                        # The event carries a single asset for both legs
                        collateral_asset=asset,
                        debt_asset=asset,
                        debt_covered=record.amount,
                        collateral_seized=record.amount,
                    ),
                    conn=conn,
                )

            change = position_update_for(event.event_name, amount)
            if change is not None:
                self.positions.apply_update(user_address, asset, change, conn=conn)

        logger.debug(
            f"Applied {event.event_name} {log.tx_hash}:{log.log_index} "
            f"user={user_address} asset={asset} amount={amount}"
        )
        return True
