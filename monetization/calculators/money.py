"""
Money helpers shared by the calculators.

Amounts are integer minor units (cents). Rates are Decimal.
"""

from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal


def quantize_units(value: Decimal) -> int:
    """Round to a whole minor unit, half away from zero."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def floor_units(value: Decimal) -> int:
    """Truncate to a whole minor unit."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_DOWN))


def format_eur(amount: int) -> str:
    """Format minor units as a euro string for descriptions."""
    return f"€{Decimal(amount) / 100:,.2f}"
