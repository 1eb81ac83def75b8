from services.indexer.src.indexer.schemas.responses import HealthResponse

__all__ = ["HealthResponse"]
