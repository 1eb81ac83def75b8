"""Decode raw LendingPool logs into named events."""

import logging
from typing import Any

import eth_abi.abi
from eth_abi.exceptions import DecodingError
from hexbytes import HexBytes

from services.indexer.src.indexer.adapters.lending_pool.abi import (
    LENDING_POOL_EVENTS,
    event_topic,
)
from services.indexer.src.indexer.domain.models import DecodedEvent, RawLog

logger = logging.getLogger(__name__)


class EventDecoder:
    """Matches logs by topic0 against a fixed event ABI set.

    Logs that match no known event (ERC-20 Transfer from a derived token, etc.) are an
    expected condition: decode() returns None without logging anything above DEBUG.
    """

    def __init__(self, events: list[dict[str, Any]] | None = None):
        self.events = events if events is not None else LENDING_POOL_EVENTS
        self._by_topic = {event_topic(e): e for e in self.events}

    @property
    def topics(self) -> list[str]:
        return list(self._by_topic)

    def decode(self, log: RawLog) -> DecodedEvent | None:
        if not log.topics:
            return None

        event_abi = self._by_topic.get(log.topics[0].lower())
        if event_abi is None:
            logger.debug(f"Skipping unknown log {log.tx_hash}:{log.log_index}")
            return None

        try:
            args = self._decode_args(event_abi, log)
        except (DecodingError, ValueError) as e:
            logger.warning(
                f"Malformed {event_abi['name']} log {log.tx_hash}:{log.log_index}: {e}"
            )
            return None

        return DecodedEvent(event_name=event_abi["name"], args=args, log=log)

    def _decode_args(self, event_abi: dict[str, Any], log: RawLog) -> dict[str, Any]:
        indexed = [i for i in event_abi["inputs"] if i["indexed"]]
        non_indexed = [i for i in event_abi["inputs"] if not i["indexed"]]

        if len(log.topics) != len(indexed) + 1:
            raise ValueError(
                f"expected {len(indexed) + 1} topics, got {len(log.topics)}"
            )

        args: dict[str, Any] = {}
        for param, topic in zip(indexed, log.topics[1:]):
            (value,) = eth_abi.abi.decode([param["type"]], HexBytes(topic))
            args[param["name"]] = value

        if non_indexed:
            values = eth_abi.abi.decode(
                [i["type"] for i in non_indexed], HexBytes(log.data)
            )
            for param, value in zip(non_indexed, values):
                args[param["name"]] = value

        # eth_abi returns checksummed addresses
        return {
            name: value.lower() if isinstance(value, str) else value
            for name, value in args.items()
        }


def encode_log(
    event_name: str,
    args: dict[str, Any],
    tx_hash: str,
    block_number: int,
    log_index: int,
    address: str,
    events: list[dict[str, Any]] | None = None,
) -> RawLog:
    """Build the raw log a contract would emit for `event_name`. Used with MockLogSource."""
    by_name = {e["name"]: e for e in (events if events is not None else LENDING_POOL_EVENTS)}
    event_abi = by_name[event_name]
    indexed = [i for i in event_abi["inputs"] if i["indexed"]]
    non_indexed = [i for i in event_abi["inputs"] if not i["indexed"]]

    topics = [event_topic(event_abi)] + [
        "0x" + eth_abi.abi.encode([i["type"]], [args[i["name"]]]).hex() for i in indexed
    ]
    data = eth_abi.abi.encode(
        [i["type"] for i in non_indexed], [args[i["name"]] for i in non_indexed]
    )

    return RawLog(
        tx_hash=tx_hash,
        block_number=block_number,
        log_index=log_index,
        contract_address=address.lower(),
        topics=tuple(topics),
        data="0x" + data.hex(),
    )
