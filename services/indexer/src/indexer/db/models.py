from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)

from services.indexer.src.indexer.db.types import IntMappedToString

metadata = MetaData()

events = Table(
    "events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tx_hash", String(66), nullable=False),
    Column("block_number", BigInteger, nullable=False),
    Column("log_index", Integer, nullable=False),
    Column("event_name", String(50), nullable=False),
    Column("user_address", String(42), nullable=True),
    Column("asset", String(42), nullable=True),
    # Raw token units as a decimal string
    Column("amount", String(78), nullable=True),
    Column("raw_args_json", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    # Replaying a block range must not apply the same log twice
    UniqueConstraint("tx_hash", "log_index", name="uq_events_log"),
    Index("ix_events_user", "user_address", "block_number"),
    Index("ix_events_asset", "asset"),
    Index("ix_events_name", "event_name"),
)

user_positions = Table(
    "user_positions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_address", String(42), nullable=False),
    Column("asset", String(42), nullable=False),
    Column("supplied_balance", IntMappedToString, nullable=False, default=0),
    Column("borrowed_balance", IntMappedToString, nullable=False, default=0),
    Column("is_collateral", Boolean, nullable=False, default=True),
    # Populated by an external risk job, never by the indexer
    Column("health_factor", Numeric(38, 18), nullable=True),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("user_address", "asset", name="uq_positions_user_asset"),
    Index("ix_positions_user", "user_address"),
)

indexer_checkpoints = Table(
    "indexer_checkpoints",
    metadata,
    Column("chain_id", Integer, primary_key=True, autoincrement=False),
    Column("last_processed_block", BigInteger, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

liquidations = Table(
    "liquidations",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tx_hash", String(66), nullable=False),
    Column("log_index", Integer, nullable=False),
    Column("liquidator", String(42), nullable=False),
    Column("user_liquidated", String(42), nullable=False),
    Column("collateral_asset", String(42), nullable=False),
    Column("debt_asset", String(42), nullable=False),
    Column("debt_covered", String(78), nullable=True),
    Column("collateral_seized", String(78), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("tx_hash", "log_index", name="uq_liquidations_log"),
    Index("ix_liquidations_user", "user_liquidated"),
    Index("ix_liquidations_time", "created_at"),
)

market_snapshots = Table(
    "market_snapshots",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("asset", String(42), nullable=False),
    Column("symbol", String(20), nullable=True),
    Column("total_supplied", IntMappedToString, nullable=False),
    Column("total_borrowed", IntMappedToString, nullable=False),
    # Decimal strings, kept verbatim so no precision is lost on SQLite
    Column("supply_rate", String(100), nullable=False),
    Column("borrow_rate", String(100), nullable=False),
    Column("utilization", String(100), nullable=False),
    Column("price_usd", String(100), nullable=False),
    Column("snapshot_at", DateTime(timezone=True), nullable=False),
    Index("ix_snapshots_asset", "asset", "snapshot_at"),
    Index("ix_snapshots_time", "snapshot_at"),
)
