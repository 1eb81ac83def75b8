"""LendingPool event ABI (v1) and the UiPoolDataProvider market-data call layout."""

from typing import Any

from eth_utils import keccak


def _event(name: str, *inputs: tuple[str, str, bool]) -> dict[str, Any]:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [
            {"name": arg_name, "type": arg_type, "indexed": indexed}
            for arg_name, arg_type, indexed in inputs
        ],
    }


_ASSET = ("asset", "address", True)
_USER = ("user", "address", True)
_AMOUNT = ("amount", "uint256", False)

LENDING_POOL_EVENTS: list[dict[str, Any]] = [
    _event("Supply", _ASSET, _USER, _AMOUNT),
    _event("Withdraw", _ASSET, _USER, _AMOUNT),
    _event("Borrow", _ASSET, _USER, _AMOUNT),
    _event("Repay", _ASSET, _USER, _AMOUNT),
    _event("Liquidate", _ASSET, _USER, _AMOUNT, ("liquidator", "address", False)),
    _event("ReserveUsedAsCollateralEnabled", _ASSET, _USER),
    _event("ReserveUsedAsCollateralDisabled", _ASSET, _USER),
]


def event_signature(event_abi: dict[str, Any]) -> str:
    """Canonical signature, e.g. 'Supply(address,address,uint256)'."""
    types = ",".join(i["type"] for i in event_abi["inputs"])
    return f"{event_abi['name']}({types})"


def event_topic(event_abi: dict[str, Any]) -> str:
    """topic0 of the event as a lowercase 0x-prefixed hex string."""
    return "0x" + keccak(text=event_signature(event_abi)).hex()


def function_selector(signature: str) -> bytes:
    return keccak(text=signature)[:4]


# UiPoolDataProvider.getMarketData(address pool) -> MarketData[]
GET_MARKET_DATA_SIGNATURE = "getMarketData(address)"
GET_MARKET_DATA_ARG_TYPES = ["address"]
MARKET_DATA_FIELDS = [
    ("asset", "address"),
    ("symbol", "string"),
    ("decimals", "uint8"),
    ("ltv", "uint256"),
    ("liqThreshold", "uint256"),
    ("supplyRate", "uint256"),
    ("borrowRate", "uint256"),
    ("totalSupplied", "uint256"),
    ("totalBorrowed", "uint256"),
    ("availableLiquidity", "uint256"),
    ("priceUsd", "uint256"),
]
GET_MARKET_DATA_RETURN_TYPES = [
    "(" + ",".join(t for _, t in MARKET_DATA_FIELDS) + ")[]"
]


def market_data_to_dict(values: tuple) -> dict[str, Any]:
    """Name the positional fields of one decoded MarketData tuple."""
    return {name: value for (name, _), value in zip(MARKET_DATA_FIELDS, values)}
