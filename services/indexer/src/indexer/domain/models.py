from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional


def _to_int(value: Any) -> int:
    """Parse a JSON-RPC quantity (hex string) or a plain integer."""
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.startswith("0x"):
        return int(value, 16)
    return int(value)


@dataclass(frozen=True)
class RawLog:
    """A contract log as returned by the node. Never mutated."""

    tx_hash: str
    block_number: int
    log_index: int
    contract_address: str
    topics: tuple[str, ...]
    data: str

    @classmethod
    def from_rpc(cls, raw: dict[str, Any]) -> "RawLog":
        """Build from an eth_getLogs result object."""
        return cls(
            tx_hash=raw.get("transactionHash") or "",
            block_number=_to_int(raw.get("blockNumber") or 0),
            log_index=_to_int(raw.get("logIndex") or 0),
            contract_address=(raw.get("address") or "").lower(),
            topics=tuple(raw.get("topics") or ()),
            data=raw.get("data") or "0x",
        )

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


@dataclass(frozen=True)
class DecodedEvent:
    """A raw log matched against a known event ABI."""

    event_name: str
    args: dict[str, Any]
    log: RawLog


@dataclass
class EventRecord:
    """Audit row for one processed log, unique per (tx_hash, log_index)."""

    tx_hash: str
    block_number: int
    log_index: int
    event_name: str
    user_address: Optional[str]
    asset: Optional[str]
    amount: Optional[str]  # decimal string, raw token units
    raw_args_json: str
    created_at: Optional[datetime] = None


@dataclass
class PositionUpdate:
    """Signed deltas for one (user, asset) position.

    None means "leave untouched"; is_collateral is only merged when set.
    """

    supplied_delta: Optional[int] = None
    borrowed_delta: Optional[int] = None
    is_collateral: Optional[bool] = None


@dataclass
class UserPosition:
    user_address: str
    asset: str
    supplied_balance: int = 0
    borrowed_balance: int = 0
    is_collateral: bool = True
    health_factor: Optional[str] = None
    updated_at: Optional[datetime] = None


@dataclass
class LiquidationRecord:
    tx_hash: str
    log_index: int
    liquidator: str
    user_liquidated: str
    collateral_asset: str
    debt_asset: str
    debt_covered: Optional[str]
    collateral_seized: Optional[str]
    created_at: Optional[datetime] = None


@dataclass
class MarketSnapshot:
    """Point-in-time market state. Rates, utilization and price are decimal strings."""

    asset: str
    symbol: str
    total_supplied: int
    total_borrowed: int
    supply_rate: str
    borrow_rate: str
    utilization: str
    price_usd: str
    snapshot_at: datetime
