"""Coin <-> smallest-unit conversions. All money is held as integer units."""

from decimal import ROUND_FLOOR, Decimal
from typing import Union

COIN = 100_000_000


def coins_to_units(value: Union[str, int, Decimal]) -> int:
    """Convert a coin amount to integer units, rounding down.

    Floats are rejected; pass the decimal string or a Decimal instead.
    """
    if isinstance(value, float):
        raise TypeError("coin amounts must be str, int or Decimal, not float")
    amount = Decimal(value) * COIN
    return int(amount.to_integral_value(rounding=ROUND_FLOOR))


def units_to_coins(units: int) -> Decimal:
    return Decimal(units) / COIN


def format_coins(units: int) -> str:
    sign = "-" if units < 0 else ""
    whole, frac = divmod(abs(units), COIN)
    return f"{sign}{whole}.{frac:08d}"
