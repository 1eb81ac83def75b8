from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Service liveness plus indexer progress."""

    status: str
    indexer_state: str
    chain_id: int
    last_processed_block: int | None = None
    snapshots_enabled: bool = False
