from decimal import Decimal, ROUND_HALF_UP
from typing import Union

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

Number = Union[Decimal, int, float, str]


def to_money(value: Number) -> Decimal:
    """Coerce to a 2dp Decimal using half-up rounding."""
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        # str() keeps floats like 0.1 from dragging binary noise in
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(value: Number) -> int:
    """Convert a currency amount to the provider's integer minor units."""
    return int((to_money(value) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(value: int) -> Decimal:
    return to_money(Decimal(value) / 100)
