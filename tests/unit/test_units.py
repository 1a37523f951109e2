"""
test_units.py - Coin/unit conversions.

Amounts are integer smallest units everywhere; conversion from coins floors
and never accepts binary floats.
"""

from decimal import Decimal

import pytest

from poolcore.units import COIN, coins_to_units, format_coins, units_to_coins


class TestCoinsToUnits:

    def test_whole_coins(self):
        assert coins_to_units("10000") == 10_000 * COIN

    def test_decimal_string(self):
        assert coins_to_units("0.00000001") == 1
        assert coins_to_units("1.5") == 150_000_000

    def test_sub_unit_fraction_floors(self):
        assert coins_to_units("0.000000019") == 1

    def test_decimal_and_int(self):
        assert coins_to_units(Decimal("2.25")) == 225_000_000
        assert coins_to_units(3) == 3 * COIN

    def test_float_rejected(self):
        with pytest.raises(TypeError):
            coins_to_units(1.5)


class TestFormatting:

    def test_units_to_coins(self):
        assert units_to_coins(150_000_000) == Decimal("1.5")

    def test_format_pads_eight_places(self):
        assert format_coins(1) == "0.00000001"
        assert format_coins(2700 * COIN) == "2700.00000000"

    def test_format_negative(self):
        assert format_coins(-150_000_000) == "-1.50000000"
