"""Utility modules."""

from services.indexer.src.indexer.utils.units import (
    compute_utilization,
    decimal_to_str,
    format_units,
    to_decimal_units,
)

__all__ = [
    "format_units",
    "to_decimal_units",
    "decimal_to_str",
    "compute_utilization",
]
