from services.indexer.src.indexer.adapters.lending_pool.decoder import EventDecoder, encode_log
from services.indexer.src.indexer.adapters.lending_pool.rpc import (
    LogSubscription,
    MockLogSource,
    RpcError,
    RpcLogSource,
)

__all__ = ["EventDecoder", "encode_log", "LogSubscription", "MockLogSource", "RpcError", "RpcLogSource"]
