"""Decimal helpers for currency amounts (two minor digits, half-up)."""

from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value) -> Decimal:
    """Quantize any numeric input to the currency's minor unit."""

    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def within_tolerance(expected: Decimal, actual: Decimal, tolerance: Decimal = CENT) -> bool:
    """Boundary-inclusive absolute difference check."""

    return abs(Decimal(expected) - Decimal(actual)) <= tolerance


def format_amount(value: Decimal) -> str:
    """Gateway wire format, e.g. `120.00`."""

    return f"{to_money(value):.2f}"
