"""Tests for EventIndexer backfill and live ingestion."""

import httpx
import pytest

from services.indexer.src.indexer.adapters.lending_pool.decoder import EventDecoder, encode_log
from services.indexer.src.indexer.adapters.lending_pool.rpc import MockLogSource
from services.indexer.src.indexer.db.checkpoint_repository import CheckpointRepository
from services.indexer.src.indexer.db.events_repository import EventsRepository
from services.indexer.src.indexer.db.positions_repository import PositionsRepository
from services.indexer.src.indexer.domain.models import RawLog
from services.indexer.src.indexer.indexing.event_indexer import EventIndexer, IndexerState
from services.indexer.src.indexer.indexing.processor import EventProcessor

CHAIN_ID = 31337
POOL = "0x" + "11" * 20
ALICE = "0x" + "aa" * 20
BOB = "0x" + "bb" * 20
WETH = "0x" + "e1" * 20


def make_log(event_name: str, amount: int, block: int, index: int = 0, user: str = ALICE) -> RawLog:
    return encode_log(
        event_name,
        {"asset": WETH, "user": user, "amount": amount},
        tx_hash=f"0xtx{block}-{index}",
        block_number=block,
        log_index=index,
        address=POOL,
    )


def sample_logs() -> list[RawLog]:
    return [
        make_log("Supply", 500, block=3),
        make_log("Borrow", 300, block=3, index=1),
        make_log("Supply", 200, block=7, user=BOB),
        make_log("Repay", 150, block=12),
        make_log("Withdraw", 50, block=25, user=BOB),
    ]


class BrokenProcessor(EventProcessor):
    """Fails on one block (or one log in it); everything else is applied normally."""

    def __init__(self, *args, fail_block: int, fail_log_index: int | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_block = fail_block
        self.fail_log_index = fail_log_index

    def process(self, event):
        if event.log.block_number == self.fail_block and self.fail_log_index in (
            None,
            event.log.log_index,
        ):
            raise RuntimeError(f"cannot apply block {self.fail_block}")
        return super().process(event)


@pytest.fixture
def source():
    return MockLogSource(block_number=30)


@pytest.fixture
def positions(engine):
    return PositionsRepository(engine)


@pytest.fixture
def checkpoints(engine):
    return CheckpointRepository(engine)


@pytest.fixture
def make_indexer(engine, source, checkpoints, scheduler):
    def factory(processor=None, **kwargs):
        kwargs.setdefault("batch_size", 10)
        kwargs.setdefault("scheduler", scheduler)
        return EventIndexer(
            log_source=source,
            decoder=EventDecoder(),
            processor=processor
            or EventProcessor(engine, EventsRepository(engine), PositionsRepository(engine)),
            checkpoints=checkpoints,
            chain_id=CHAIN_ID,
            contract_address=POOL,
            **kwargs,
        )

    return factory


def balances(positions, user=ALICE):
    position = positions.get_position(user, WETH)
    return position.supplied_balance, position.borrowed_balance


class TestBackfill:

    def test_windows_cover_range_in_order(self, make_indexer, source):
        make_indexer(batch_size=10).backfill(1, 30)

        ranges = [(c[1]["from"], c[1]["to"]) for c in source.call_history if c[0] == "get_logs"]
        assert ranges == [(1, 10), (11, 20), (21, 30)]

    def test_last_window_is_clamped(self, make_indexer, source):
        make_indexer(batch_size=10).backfill(5, 17)

        ranges = [(c[1]["from"], c[1]["to"]) for c in source.call_history if c[0] == "get_logs"]
        assert ranges == [(5, 14), (15, 17)]

    def test_applies_events_and_checkpoints(self, make_indexer, source, positions, checkpoints):
        source.add_logs(sample_logs())

        applied = make_indexer().backfill(1, 30)

        assert applied == 5
        assert balances(positions) == (500, 150)
        assert balances(positions, BOB) == (150, 0)
        assert checkpoints.get_last_processed_block(CHAIN_ID) == 30

    @pytest.mark.parametrize("batch_size", [1, 3, 7, 100])
    def test_result_independent_of_batch_size(self, make_indexer, source, positions, batch_size):
        source.add_logs(sample_logs())

        make_indexer(batch_size=batch_size).backfill(1, 30)

        assert balances(positions) == (500, 150)
        assert balances(positions, BOB) == (150, 0)

    def test_rerun_is_idempotent(self, make_indexer, source, positions):
        source.add_logs(sample_logs())
        indexer = make_indexer()

        indexer.backfill(1, 30)
        applied = indexer.backfill(1, 30)

        assert applied == 0
        assert balances(positions) == (500, 150)

    def test_empty_range(self, make_indexer, source):
        assert make_indexer().backfill(10, 9) == 0
        assert not any(c[0] == "get_logs" for c in source.call_history)

    def test_skips_undecodable_logs(self, make_indexer, source, positions):
        source.add_logs([
            RawLog("0xjunk", 2, 0, POOL, ("0x" + "00" * 32,), "0x"),
            make_log("Supply", 10, block=2, index=1),
        ])

        assert make_indexer().backfill(1, 5) == 1
        assert balances(positions) == (10, 0)

    def test_applies_in_block_and_log_order(self, make_indexer, source, positions, caplog):
        # Withdraw before Supply in insertion order would go negative if applied unsorted
        source.add_logs([
            make_log("Withdraw", 100, block=4, index=1),
            make_log("Supply", 100, block=4, index=0),
        ])

        make_indexer().backfill(1, 5)

        assert balances(positions) == (0, 0)
        assert "Negative balance" not in caplog.text

    def test_fault_keeps_checkpoint_at_last_window(
        self, engine, make_indexer, source, positions, checkpoints
    ):
        source.add_logs(sample_logs())
        processor = BrokenProcessor(
            engine, EventsRepository(engine), PositionsRepository(engine), fail_block=12
        )

        with pytest.raises(RuntimeError):
            make_indexer(processor=processor, batch_size=10).backfill(1, 30)

        assert checkpoints.get_last_processed_block(CHAIN_ID) == 10
        # Block 3 applied, the Repay at block 12 was not
        assert balances(positions) == (500, 300)

    def test_fetch_error_propagates(self, make_indexer, source, checkpoints):
        source.fail_next.append(httpx.ConnectError("node down"))

        with pytest.raises(httpx.ConnectError):
            make_indexer().backfill(1, 30)

        assert checkpoints.get_last_processed_block(CHAIN_ID) is None


class TestStart:

    def test_backfills_from_checkpoint_then_goes_live(self, make_indexer, source, checkpoints):
        checkpoints.save_checkpoint(CHAIN_ID, 20)
        indexer = make_indexer()

        indexer.start()

        ranges = [(c[1]["from"], c[1]["to"]) for c in source.call_history if c[0] == "get_logs"]
        assert ranges == [(21, 30)]
        assert ("watch_logs", {"address": POOL, "from": 31}) in source.call_history
        assert indexer.state == IndexerState.LIVE

    def test_starts_from_block_one_without_checkpoint(self, make_indexer, source):
        make_indexer(batch_size=100).start()

        ranges = [(c[1]["from"], c[1]["to"]) for c in source.call_history if c[0] == "get_logs"]
        assert ranges == [(1, 30)]

    def test_start_twice_is_noop(self, make_indexer, source):
        indexer = make_indexer()
        indexer.start()
        indexer.start()

        assert len(source.subscriptions) == 1

    def test_missing_address_disables_indexer(self, engine, source, checkpoints, caplog):
        indexer = EventIndexer(
            log_source=source,
            decoder=EventDecoder(),
            processor=EventProcessor(engine, EventsRepository(engine), PositionsRepository(engine)),
            checkpoints=checkpoints,
            chain_id=CHAIN_ID,
            contract_address=None,
        )

        indexer.start()
        indexer.start()

        assert indexer.state == IndexerState.STOPPED
        assert source.call_history == []
        assert caplog.text.count("LendingPool address not configured") == 1

    def test_failure_is_logged_and_retried(self, make_indexer, source, scheduler, caplog):
        source.fail_next.append(httpx.ConnectError("node down"))
        indexer = make_indexer(retry_seconds=30)

        indexer.start()

        assert indexer.state == IndexerState.STOPPED
        assert "Backfill failed" in caplog.text
        assert len(scheduler.jobs) == 1

        scheduler.advance(30)

        assert indexer.state == IndexerState.LIVE

    def test_stop_cancels_pending_retry(self, make_indexer, source, scheduler):
        source.fail_next.append(httpx.ConnectError("node down"))
        indexer = make_indexer()
        indexer.start()

        indexer.stop()
        scheduler.advance(300)

        assert indexer.state == IndexerState.STOPPED
        assert scheduler.jobs == []


class TestLive:

    def test_live_logs_are_applied_and_checkpointed(self, make_indexer, source, positions, checkpoints):
        indexer = make_indexer()
        indexer.start()

        source.emit([make_log("Borrow", 40, block=32, index=1), make_log("Supply", 100, block=32)])

        assert balances(positions) == (100, 40)
        assert checkpoints.get_last_processed_block(CHAIN_ID) == 32

    def test_no_gap_between_backfill_and_live(self, make_indexer, source, positions):
        source.add_logs([make_log("Supply", 100, block=30)])
        indexer = make_indexer()
        indexer.start()

        # The node redelivers the head block; it must not double count
        source.emit([make_log("Supply", 100, block=30), make_log("Supply", 1, block=31)])

        assert balances(positions) == (101, 0)

    def test_skip_policy_continues_after_fault(self, engine, make_indexer, source, positions, checkpoints):
        processor = BrokenProcessor(
            engine, EventsRepository(engine), PositionsRepository(engine), fail_block=33
        )
        indexer = make_indexer(processor=processor, live_error_policy="skip")
        indexer.start()

        source.emit([make_log("Supply", 1, block=33), make_log("Supply", 2, block=34)])

        assert balances(positions) == (2, 0)
        assert checkpoints.get_last_processed_block(CHAIN_ID) == 34
        assert indexer.state == IndexerState.LIVE

    def test_halt_policy_stops_at_fault(self, engine, make_indexer, source, positions, checkpoints):
        processor = BrokenProcessor(
            engine, EventsRepository(engine), PositionsRepository(engine), fail_block=33
        )
        indexer = make_indexer(processor=processor, live_error_policy="halt")
        indexer.start()

        source.emit([make_log("Supply", 1, block=32), make_log("Supply", 2, block=33)])

        assert balances(positions) == (1, 0)
        assert checkpoints.get_last_processed_block(CHAIN_ID) == 32
        assert indexer.state == IndexerState.STOPPED
        assert source.subscriptions == []

    def test_halt_mid_block_replays_block_on_restart(
        self, engine, make_indexer, source, positions, checkpoints
    ):
        processor = BrokenProcessor(
            engine,
            EventsRepository(engine),
            PositionsRepository(engine),
            fail_block=33,
            fail_log_index=1,
        )
        block_33 = [make_log("Supply", 1, block=33), make_log("Supply", 2, block=33, index=1)]
        indexer = make_indexer(processor=processor, live_error_policy="halt")
        indexer.start()

        source.emit(block_33)

        assert balances(positions) == (1, 0)
        assert checkpoints.get_last_processed_block(CHAIN_ID) == 30
        assert indexer.state == IndexerState.STOPPED

        source.add_logs(block_33)
        source.set_block_number(40)
        make_indexer().start()

        assert balances(positions) == (3, 0)
        assert checkpoints.get_last_processed_block(CHAIN_ID) == 40

    def test_watch_errors_are_logged(self, make_indexer, source, caplog):
        indexer = make_indexer()
        indexer.start()

        source.emit_error(httpx.ReadTimeout("slow"))

        assert "Live watch error" in caplog.text
        assert indexer.state == IndexerState.LIVE

    def test_watch_live_without_backfill(self, make_indexer, source):
        indexer = make_indexer()

        indexer.watch_live(50)
        indexer.watch_live(50)

        assert ("watch_logs", {"address": POOL, "from": 50}) in source.call_history
        assert len(source.subscriptions) == 1
        assert indexer.state == IndexerState.LIVE

    def test_rejects_unknown_policy(self, make_indexer):
        with pytest.raises(ValueError):
            make_indexer(live_error_policy="retry")


class TestStop:

    def test_no_writes_after_stop(self, make_indexer, source, positions, checkpoints):
        indexer = make_indexer()
        indexer.start()
        captured = list(source.subscriptions)

        indexer.stop()
        # A notification already in flight when stop() returned
        for _, on_logs, _ in captured:
            on_logs([make_log("Supply", 100, block=31)])

        assert indexer.state == IndexerState.STOPPED
        assert source.subscriptions == []
        assert positions.get_position(ALICE, WETH) is None
        assert checkpoints.get_last_processed_block(CHAIN_ID) == 30

    def test_stop_is_idempotent(self, make_indexer):
        indexer = make_indexer()
        indexer.start()

        indexer.stop()
        indexer.stop()

        assert indexer.state == IndexerState.STOPPED

    def test_stop_before_start(self, make_indexer):
        indexer = make_indexer()

        indexer.stop()

        assert indexer.state == IndexerState.STOPPED

    def test_restart_after_stop(self, make_indexer, source):
        indexer = make_indexer()
        indexer.start()
        indexer.stop()

        indexer.start()

        assert indexer.state == IndexerState.LIVE
        assert len(source.subscriptions) == 1

    def test_stop_during_backfill_window_writes_nothing(
        self, engine, make_indexer, source, checkpoints, scheduler
    ):
        source.add_logs(sample_logs())
        events = EventsRepository(engine)
        indexer = make_indexer(batch_size=10)
        fetch = source.get_logs
        at_stop = {}

        def fetch_then_stop(*args):
            logs = fetch(*args)
            indexer.stop()
            at_stop["events"] = events.count_events()
            at_stop["checkpoint"] = checkpoints.get_last_processed_block(CHAIN_ID)
            return logs

        source.get_logs = fetch_then_stop
        indexer.start()

        assert at_stop == {"events": 0, "checkpoint": None}
        assert events.count_events() == 0
        assert checkpoints.get_last_processed_block(CHAIN_ID) is None
        assert indexer.state == IndexerState.STOPPED
        assert source.subscriptions == []
        assert scheduler.jobs == []

    def test_retry_already_dispatched_does_not_restart(self, make_indexer, source, scheduler):
        source.fail_next.append(httpx.ConnectError("node down"))
        indexer = make_indexer()
        indexer.start()
        (retry,) = scheduler.jobs

        indexer.stop()
        # The scheduler picked the job up just before stop() removed it
        retry.func()

        assert indexer.state == IndexerState.STOPPED
        assert source.subscriptions == []
        assert [c[0] for c in source.call_history] == ["get_block_number"]


class TestStartInBackground:

    def test_runs_on_scheduler(self, make_indexer, source, scheduler):
        indexer = make_indexer()

        indexer.start_in_background()

        assert source.call_history == []
        assert indexer.state == IndexerState.STOPPED

        scheduler.advance(0)

        assert indexer.state == IndexerState.LIVE

    def test_stop_cancels_pending_start(self, make_indexer, source, scheduler):
        indexer = make_indexer()
        indexer.start_in_background()

        indexer.stop()
        scheduler.advance(60)

        assert indexer.state == IndexerState.STOPPED
        assert scheduler.jobs == []
        assert source.call_history == []

    def test_requires_scheduler(self, make_indexer):
        with pytest.raises(RuntimeError):
            make_indexer(scheduler=None).start_in_background()
