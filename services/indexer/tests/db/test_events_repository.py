"""Tests for EventsRepository."""

from datetime import datetime, timedelta, timezone

import pytest

from services.indexer.src.indexer.db.events_repository import EventsRepository
from services.indexer.src.indexer.domain.models import EventRecord, LiquidationRecord

ALICE = "0x" + "aa" * 20
BOB = "0x" + "bb" * 20
WETH = "0x" + "e1" * 20


def make_record(
    tx_hash: str = "0xtx1",
    log_index: int = 0,
    block_number: int = 100,
    event_name: str = "Supply",
    user_address: str = ALICE,
    amount: str | None = "1000",
) -> EventRecord:
    return EventRecord(
        tx_hash=tx_hash,
        block_number=block_number,
        log_index=log_index,
        event_name=event_name,
        user_address=user_address,
        asset=WETH,
        amount=amount,
        raw_args_json="{}",
    )


def make_liquidation(tx_hash: str = "0xliq", log_index: int = 0, **kwargs) -> LiquidationRecord:
    return LiquidationRecord(
        tx_hash=tx_hash,
        log_index=log_index,
        liquidator="0xliquidator",
        user_liquidated=ALICE,
        collateral_asset=WETH,
        debt_asset=WETH,
        debt_covered="10",
        collateral_seized="10",
        created_at=kwargs.get("created_at"),
    )


@pytest.fixture
def repository(engine):
    return EventsRepository(engine)


class TestInsertEvent:

    def test_inserts_new_event(self, repository):
        assert repository.insert_event(make_record()) is True

        assert repository.count_events() == 1

    def test_duplicate_log_is_ignored(self, repository):
        repository.insert_event(make_record(amount="1000"))

        assert repository.insert_event(make_record(amount="9999")) is False

        events = repository.get_events_by_user(ALICE)
        assert len(events) == 1
        assert events[0].amount == "1000"

    def test_same_tx_different_log_index(self, repository):
        repository.insert_event(make_record(log_index=0))

        assert repository.insert_event(make_record(log_index=1)) is True
        assert repository.count_events() == 2

    def test_joins_callers_transaction(self, engine, repository):
        with pytest.raises(RuntimeError):
            with engine.begin() as conn:
                repository.insert_event(make_record(), conn=conn)
                raise RuntimeError("rollback")

        assert repository.count_events() == 0

    def test_keeps_uint256_amount_exact(self, repository):
        amount = str(2**256 - 1)
        repository.insert_event(make_record(amount=amount))

        assert repository.get_events_by_user(ALICE)[0].amount == amount


class TestGetEventsByUser:

    def test_newest_first_by_block_then_log_index(self, repository):
        repository.insert_event(make_record(tx_hash="0xa", block_number=1, log_index=5))
        repository.insert_event(make_record(tx_hash="0xb", block_number=3, log_index=0))
        repository.insert_event(make_record(tx_hash="0xc", block_number=3, log_index=2))

        events = repository.get_events_by_user(ALICE)

        assert [(e.block_number, e.log_index) for e in events] == [(3, 2), (3, 0), (1, 5)]

    def test_case_insensitive_address(self, repository):
        repository.insert_event(make_record())

        assert len(repository.get_events_by_user(ALICE.upper().replace("0X", "0x"))) == 1

    def test_filters_by_user(self, repository):
        repository.insert_event(make_record(tx_hash="0xa", user_address=ALICE))
        repository.insert_event(make_record(tx_hash="0xb", user_address=BOB))

        events = repository.get_events_by_user(BOB)

        assert [e.tx_hash for e in events] == ["0xb"]

    def test_limit_and_offset(self, repository):
        for i in range(5):
            repository.insert_event(make_record(tx_hash=f"0x{i}", block_number=i))

        page = repository.get_events_by_user(ALICE, limit=2, offset=1)

        assert [e.block_number for e in page] == [3, 2]


class TestCountEvents:

    def test_counts_by_name(self, repository):
        repository.insert_event(make_record(tx_hash="0xa", event_name="Supply"))
        repository.insert_event(make_record(tx_hash="0xb", event_name="Borrow"))
        repository.insert_event(make_record(tx_hash="0xc", event_name="Borrow"))

        assert repository.count_events() == 3
        assert repository.count_events("Borrow") == 2
        assert repository.count_events("Repay") == 0


class TestLiquidations:

    def test_duplicate_liquidation_is_ignored(self, repository):
        assert repository.insert_liquidation(make_liquidation()) is True
        assert repository.insert_liquidation(make_liquidation()) is False

        assert len(repository.get_liquidations()) == 1

    def test_time_range_and_order(self, repository):
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        for i in range(3):
            repository.insert_liquidation(
                make_liquidation(tx_hash=f"0x{i}", created_at=base + timedelta(hours=i))
            )

        results = repository.get_liquidations(
            from_time=base + timedelta(minutes=30),
            to_time=base + timedelta(hours=3),
        )

        assert [r.tx_hash for r in results] == ["0x2", "0x1"]

    def test_limit(self, repository):
        for i in range(4):
            repository.insert_liquidation(make_liquidation(tx_hash=f"0x{i}"))

        assert len(repository.get_liquidations(limit=2)) == 2
