"""
LendingPool event indexer.

Backfills historical logs from the last checkpoint to the chain head in fixed-size block
windows, then switches to a live log subscription. The checkpoint only moves after the
logs it covers are applied, so a crash replays (never skips) blocks.
"""
import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Sequence

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.base import BaseScheduler

from services.indexer.src.indexer.adapters.lending_pool.decoder import EventDecoder
from services.indexer.src.indexer.adapters.lending_pool.rpc import LogSubscription, RpcLogSource
from services.indexer.src.indexer.db.checkpoint_repository import CheckpointRepository
from services.indexer.src.indexer.domain.models import RawLog
from services.indexer.src.indexer.indexing.processor import EventProcessor

logger = logging.getLogger(__name__)

LIVE_ERROR_POLICIES = ("skip", "halt")


class IndexerState(str, Enum):
    STOPPED = "stopped"
    BACKFILLING = "backfilling"
    LIVE = "live"


class EventIndexer:
    def __init__(
        self,
        log_source: RpcLogSource,
        decoder: EventDecoder,
        processor: EventProcessor,
        checkpoints: CheckpointRepository,
        chain_id: int,
        contract_address: str | None,
        batch_size: int = 1000,
        scheduler: BaseScheduler | None = None,
        retry_seconds: int = 30,
        live_error_policy: str = "skip",
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        if live_error_policy not in LIVE_ERROR_POLICIES:
            raise ValueError(f"Unknown live error policy: {live_error_policy}")

        self.log_source = log_source
        self.decoder = decoder
        self.processor = processor
        self.checkpoints = checkpoints
        self.chain_id = chain_id
        self.contract_address = contract_address.lower() if contract_address else None
        self.batch_size = batch_size
        self.scheduler = scheduler
        self.retry_seconds = retry_seconds
        self.live_error_policy = live_error_policy

        self._state = IndexerState.STOPPED
        self._subscription: LogSubscription | None = None
        self._retry_job = None
        # Serializes live batches against each other and against stop()
        self._lock = threading.Lock()
        # Held for a whole start run; stop() waits on it. Reentrant so stop() can be
        # called from code running inside the backfill.
        self._run_lock = threading.RLock()
        self._stop_requested = threading.Event()
        self._warned_disabled = False

    @property
    def state(self) -> IndexerState:
        return self._state

    def last_processed_block(self) -> int:
        return self.checkpoints.get_last_processed_block(self.chain_id) or 0

    def start(self) -> None:
        """
        Backfill from the checkpoint to the chain head, then watch live logs.

        Never raises for chain or processing failures: they are logged, the indexer goes
        back to STOPPED and, when a scheduler is available, start() is retried later.
        """
        self._stop_requested.clear()
        self._run()

    def start_in_background(self, delay_seconds: float = 0) -> None:
        """Like start(), but run on the scheduler. stop() cancels it if it has not run yet."""
        if self.scheduler is None:
            raise RuntimeError("Background start requires a scheduler")
        self._stop_requested.clear()
        with self._lock:
            self._schedule_run(delay_seconds)

    def _run(self) -> None:
        if not self.contract_address:
            if not self._warned_disabled:
                logger.warning("LendingPool address not configured, skipping indexer")
                self._warned_disabled = True
            return

        with self._run_lock:
            with self._lock:
                # Scheduled runs never override a stop() issued after they were queued
                if self._stop_requested.is_set():
                    return
                if self._state != IndexerState.STOPPED:
                    logger.info(f"Indexer already {self._state.value}")
                    return
                self._state = IndexerState.BACKFILLING
                self._cancel_retry()

            logger.info(
                f"Starting indexer for LendingPool at {self.contract_address} (chain {self.chain_id})"
            )

            try:
                from_block = self.last_processed_block() + 1
                head = self.log_source.get_block_number()
                self.backfill(from_block, head)
            except Exception as e:
                logger.error(f"Backfill failed: {e}", exc_info=True)
                with self._lock:
                    self._state = IndexerState.STOPPED
                    if not self._stop_requested.is_set():
                        self._schedule_retry()
                return

            with self._lock:
                if self._stop_requested.is_set():
                    self._state = IndexerState.STOPPED
                    logger.info("Stop requested during backfill, not starting live watch")
                    return
                self._subscribe(head + 1)

    def watch_live(self, from_block: int) -> None:
        """Apply new logs from `from_block` onwards as the log source delivers them."""
        with self._lock:
            if self._state == IndexerState.LIVE:
                return
            self._stop_requested.clear()
            self._subscribe(from_block)

    def stop(self) -> None:
        """
        Cancel the live subscription and any pending retry. Safe to call repeatedly.

        Waits for an in-flight backfill to notice the request and return, so nothing is
        written once this returns.
        """
        self._stop_requested.set()
        with self._run_lock, self._lock:
            self._cancel_subscription()
            self._cancel_retry()
            if self._state == IndexerState.LIVE:
                self._state = IndexerState.STOPPED
                logger.info("Indexer stopped")

    def backfill(self, from_block: int, to_block: int) -> int:
        """
        Apply all logs in [from_block, to_block], one block window at a time.

        Windows run in ascending order; each window's checkpoint is saved only after all of
        its logs are applied. A processing error aborts the current window and propagates.
        A stop request ends the backfill at the next log, without checkpointing the
        interrupted window.

        Returns:
            Number of events applied (duplicates excluded)
        """
        if from_block > to_block:
            logger.info(f"Already up to date at block {to_block}")
            return 0

        logger.info(f"Backfilling from block {from_block} to {to_block}")

        applied = 0
        window_start = from_block
        while window_start <= to_block:
            if self._stop_requested.is_set():
                logger.info(f"Backfill interrupted before block {window_start}")
                break

            window_end = min(window_start + self.batch_size - 1, to_block)
            logs = self.log_source.get_logs(self.contract_address, window_start, window_end)
            window_applied = self._apply_logs(logs)
            applied += window_applied
            if self._stop_requested.is_set():
                logger.info(f"Backfill interrupted in blocks {window_start}-{window_end}")
                break
            self.checkpoints.save_checkpoint(self.chain_id, window_end)

            logger.info(
                f"Processed blocks {window_start}-{window_end} "
                f"({len(logs)} logs, {window_applied} events applied)"
            )
            window_start = window_end + 1

        return applied

    def _apply_logs(self, logs: Sequence[RawLog]) -> int:
        applied = 0
        for log in sorted(logs, key=lambda log: log.sort_key):
            if self._stop_requested.is_set():
                break
            event = self.decoder.decode(log)
            if event is None:
                continue
            if self.processor.process(event):
                applied += 1
        return applied

    def _on_live_logs(self, logs: list[RawLog]) -> None:
        with self._lock:
            if self._state != IndexerState.LIVE:
                return

            # A block is checkpointed only once all of its logs in the batch are applied
            current_block = None
            for log in sorted(logs, key=lambda log: log.sort_key):
                if current_block is not None and log.block_number != current_block:
                    self.checkpoints.save_checkpoint(self.chain_id, current_block)
                current_block = log.block_number

                event = self.decoder.decode(log)
                if event is None:
                    continue
                try:
                    self.processor.process(event)
                except Exception as e:
                    if self.live_error_policy == "halt":
                        logger.error(
                            f"Halting live ingestion at {log.tx_hash}:{log.log_index}: {e}",
                            exc_info=True,
                        )
                        self._cancel_subscription()
                        self._state = IndexerState.STOPPED
                        return
                    logger.error(
                        f"Error processing live event {log.tx_hash}:{log.log_index}, skipping: {e}",
                        exc_info=True,
                    )

            if current_block is not None:
                self.checkpoints.save_checkpoint(self.chain_id, current_block)

    def _on_live_error(self, error: Exception) -> None:
        logger.error(f"Live watch error: {error}")

    def _subscribe(self, from_block: int) -> None:
        self._subscription = self.log_source.watch_logs(
            self.contract_address,
            self._on_live_logs,
            self._on_live_error,
            from_block=from_block,
        )
        self._state = IndexerState.LIVE
        logger.info(f"Live event watching started from block {from_block}")

    def _cancel_subscription(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def _cancel_retry(self) -> None:
        if self._retry_job is not None:
            try:
                self._retry_job.remove()
            except JobLookupError:
                pass
            self._retry_job = None

    def _schedule_run(self, delay_seconds: float) -> None:
        run_date = datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)
        self._retry_job = self.scheduler.add_job(
            self._run,
            "date",
            run_date=run_date,
            id=f"indexer-start-{uuid.uuid4().hex[:8]}",
            name="Indexer backfill + live",
        )

    def _schedule_retry(self) -> None:
        if self.scheduler is None:
            return
        self._schedule_run(self.retry_seconds)
        logger.info(f"Retrying indexer start in {self.retry_seconds}s")
