"""Fixed-point unit conversions for on-chain integers."""

from decimal import Decimal, localcontext

WAD_DECIMALS = 18

# Enough digits for any uint256 (78) plus its fractional part
_PRECISION = 160


def to_decimal_units(value: int, decimals: int) -> Decimal:
    """Shift a raw integer amount by `decimals` places. Exact for any uint256."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return Decimal(value).scaleb(-decimals)


def decimal_to_str(value: Decimal) -> str:
    """Plain (non-scientific) string without trailing zeros, e.g. '0.05', '1', '0'."""
    if value == 0:
        return "0"
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return format(value.normalize(), "f")


def format_units(value: int, decimals: int = WAD_DECIMALS) -> str:
    """Format a raw fixed-point integer as a decimal string.

    Examples:
        - format_units(50000000000000000, 18) -> '0.05'
        - format_units(1000000, 6) -> '1'
    """
    return decimal_to_str(to_decimal_units(value, decimals))


def compute_utilization(total_supplied: int, total_borrowed: int, decimals: int) -> str:
    """Borrowed / supplied on decimal-shifted quantities. '0' when nothing is supplied."""
    if total_supplied == 0:
        return "0"
    supplied = to_decimal_units(total_supplied, decimals)
    borrowed = to_decimal_units(total_borrowed, decimals)
    return decimal_to_str(borrowed / supplied)
