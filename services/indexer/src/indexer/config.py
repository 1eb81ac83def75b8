import os
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


def _find_env_file() -> str | None:
    """Find .env file, preferring .env.local for local development."""
    for env_file in [".env.local", ".env"]:
        for base in [".", os.environ.get("REPO_ROOT", "")]:
            if base:
                path = Path(base) / env_file
                if path.exists():
                    return str(path)
    return None


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=_find_env_file(),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # DATABASE_URL from environment (production/CI)
    # Falls back to SQLite for local development if not set
    database_url: str = "sqlite:///./local.db"

    # Chain
    rpc_url: str = "http://127.0.0.1:8545"
    chain_id: int = 31337
    rpc_timeout_seconds: float = 30.0
    rpc_max_attempts: int = 3

    # Contracts (unset disables the matching component)
    lending_pool_address: str | None = None
    ui_data_provider_address: str | None = None

    # Indexer
    backfill_batch_size: int = 1000
    backfill_retry_seconds: int = 30
    live_poll_interval_seconds: float = 4.0
    live_error_policy: Literal["skip", "halt"] = "skip"

    # Snapshots
    snapshot_interval_ms: int = 60_000

    log_level: str = "INFO"


settings = Settings()
