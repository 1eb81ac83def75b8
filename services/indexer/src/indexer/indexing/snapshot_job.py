"""Periodic market snapshots read from the UiPoolDataProvider."""

import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.base import BaseScheduler

from services.indexer.src.indexer.adapters.lending_pool.abi import (
    GET_MARKET_DATA_ARG_TYPES,
    GET_MARKET_DATA_RETURN_TYPES,
    GET_MARKET_DATA_SIGNATURE,
    market_data_to_dict,
)
from services.indexer.src.indexer.adapters.lending_pool.rpc import RpcLogSource
from services.indexer.src.indexer.db.repository import MarketSnapshotRepository
from services.indexer.src.indexer.domain.models import MarketSnapshot
from services.indexer.src.indexer.utils.units import compute_utilization, format_units

logger = logging.getLogger(__name__)


def build_snapshot(market: dict[str, Any], snapshot_at: datetime) -> MarketSnapshot:
    """Turn one getMarketData entry into a MarketSnapshot.

    Rates and price are 18-decimal fixed point; totals stay in raw token units.
    """
    decimals = int(market["decimals"])
    total_supplied = int(market["totalSupplied"])
    total_borrowed = int(market["totalBorrowed"])

    return MarketSnapshot(
        asset=market["asset"].lower(),
        symbol=market["symbol"],
        total_supplied=total_supplied,
        total_borrowed=total_borrowed,
        supply_rate=format_units(int(market["supplyRate"]), 18),
        borrow_rate=format_units(int(market["borrowRate"]), 18),
        utilization=compute_utilization(total_supplied, total_borrowed, decimals),
        price_usd=format_units(int(market["priceUsd"]), 18),
        snapshot_at=snapshot_at,
    )


class SnapshotJob:
    def __init__(
        self,
        log_source: RpcLogSource,
        repository: MarketSnapshotRepository,
        ui_data_provider_address: str,
        lending_pool_address: str,
        scheduler: BaseScheduler | None = None,
        interval_ms: int = 60_000,
    ):
        self.log_source = log_source
        self.repository = repository
        self.ui_data_provider_address = ui_data_provider_address
        self.lending_pool_address = lending_pool_address
        self.scheduler = scheduler
        self.interval_ms = interval_ms

        self._job = None
        self._first_tick_job = None
        self._stopped = True
        # Held for the duration of a tick; ticks never overlap
        self._tick_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._job is not None

    def start(self) -> None:
        """Schedule take_snapshot() every interval_ms, plus one run as soon as the scheduler is free."""
        if self._job is not None:
            logger.info("Snapshot job already running")
            return
        if self.scheduler is None:
            raise RuntimeError("Snapshot job requires a scheduler to run periodically")

        logger.info(f"Starting periodic market snapshot job (every {self.interval_ms}ms)")
        self._stopped = False
        self._job = self.scheduler.add_job(
            self._tick,
            "interval",
            seconds=self.interval_ms / 1000,
            id=f"market-snapshot-{uuid.uuid4().hex[:8]}",
            name="Market snapshot",
            max_instances=1,
            coalesce=True,
        )
        # Off the caller's thread, so a slow node never blocks service startup
        self._first_tick_job = self.scheduler.add_job(
            self._tick,
            id=f"market-snapshot-first-{uuid.uuid4().hex[:8]}",
            name="Market snapshot (initial)",
        )

    def stop(self) -> None:
        """Unschedule the job and wait for an in-flight tick. Idempotent."""
        job, self._job = self._job, None
        first_tick_job, self._first_tick_job = self._first_tick_job, None
        if first_tick_job is not None:
            try:
                first_tick_job.remove()
            except JobLookupError:
                pass
        if job is not None:
            try:
                job.remove()
            except JobLookupError:
                pass
            logger.info("Snapshot job stopped")
        with self._tick_lock:
            self._stopped = True

    def _tick(self) -> None:
        if not self._tick_lock.acquire(blocking=False):
            logger.warning("Previous snapshot still running, skipping this tick")
            return
        try:
            if self._stopped:
                return
            self.take_snapshot()
        except Exception as e:
            logger.error(f"Snapshot failed: {e}", exc_info=True)
        finally:
            self._tick_lock.release()

    def take_snapshot(self) -> int:
        """
        Read all markets in one call and store one snapshot row per market.

        Returns:
            Number of snapshot rows written
        """
        (markets,) = self.log_source.read_contract(
            self.ui_data_provider_address,
            GET_MARKET_DATA_SIGNATURE,
            [self.lending_pool_address],
            GET_MARKET_DATA_ARG_TYPES,
            GET_MARKET_DATA_RETURN_TYPES,
        )

        snapshot_at = datetime.now(timezone.utc)
        snapshots = [build_snapshot(market_data_to_dict(m), snapshot_at) for m in markets]
        count = self.repository.insert_snapshots(snapshots)

        logger.info(f"Saved snapshot for {len(snapshots)} markets")
        return count
