"""
Money helpers

Amounts are ``Decimal`` in major units (pounds). Rounding is always to the
smallest currency unit with ROUND_HALF_UP, which for ``Decimal`` rounds
half away from zero (-0.005 -> -0.01), so negating an input negates the
rounded result exactly.
"""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def round_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    """Pounds to pence, as the provider API expects."""
    return int((round_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))
