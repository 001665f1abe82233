"""
Test suite for currency module

Tests Money arithmetic and rounding. Amounts must stay exact until they are
explicitly quantized, and floats must never be accepted.
"""

import pytest
from decimal import Decimal

from lending_core.currency import (
    Money, Currency, round_half_up, sum_money, decimal_from_string, to_decimal
)
from lending_core.errors import InvalidTermError


class TestMoney:
    """Test Money class operations"""

    def test_money_creation(self):
        """Test Money keeps the exact amount it was given"""
        money = Money(Decimal('100.555'), Currency.USD)
        assert money.amount == Decimal('100.555')
        assert money.currency == Currency.USD

        assert Money.of('12.30', Currency.KES).amount == Decimal('12.30')
        assert Money.of(5, Currency.EUR).amount == Decimal('5')

    def test_float_rejected(self):
        """Test floats cannot sneak into monetary values"""
        with pytest.raises(TypeError):
            Money(100.5, Currency.USD)
        with pytest.raises(TypeError):
            Money.of('10.00', Currency.USD) * 1.5
        with pytest.raises(TypeError):
            to_decimal(0.1)

    def test_money_arithmetic(self):
        """Test Money arithmetic is exact"""
        a = Money(Decimal('100.50'), Currency.USD)
        b = Money(Decimal('50.25'), Currency.USD)

        assert a + b == Money(Decimal('150.75'), Currency.USD)
        assert a - b == Money(Decimal('50.25'), Currency.USD)
        assert a * 2 == Money(Decimal('201.00'), Currency.USD)
        assert 2 * a == Money(Decimal('201.00'), Currency.USD)
        assert (a / 3).amount == Decimal('100.50') / Decimal('3')
        assert -a == Money(Decimal('-100.50'), Currency.USD)
        assert abs(-a) == a

    def test_currency_mismatch(self):
        """Test mixing currencies raises"""
        usd = Money(Decimal('10.00'), Currency.USD)
        eur = Money(Decimal('10.00'), Currency.EUR)

        with pytest.raises(ValueError):
            usd + eur
        with pytest.raises(ValueError):
            usd - eur
        with pytest.raises(ValueError):
            usd < eur
        with pytest.raises(TypeError):
            usd + Decimal('1')

    def test_division_by_zero(self):
        """Test dividing money by zero is a term error"""
        with pytest.raises(InvalidTermError):
            Money(Decimal('10.00'), Currency.USD) / 0

    def test_comparisons(self):
        """Test ordering and equality ignore trailing zeros"""
        small = Money(Decimal('1.00'), Currency.USD)
        large = Money(Decimal('2'), Currency.USD)

        assert small < large
        assert large >= small
        assert small.min(large) == small
        assert Money(Decimal('2.00'), Currency.USD) == large
        assert hash(Money(Decimal('2.00'), Currency.USD)) == hash(large)
        assert Money(Decimal('2.00'), Currency.USD) != Money(Decimal('2.00'), Currency.EUR)

    def test_predicates(self):
        """Test zero/positive/negative helpers"""
        assert Money.zero(Currency.USD).is_zero()
        assert Money(Decimal('0.01'), Currency.USD).is_positive()
        assert Money(Decimal('-0.01'), Currency.USD).is_negative()

    def test_to_string(self):
        """Test display formatting"""
        assert Money(Decimal('1234.5'), Currency.USD).to_string() == "USD 1,234.50"
        assert str(Money(Decimal('1.5'), Currency.KWD)) == "KWD 1.500"


class TestRounding:
    """Test explicit rounding"""

    def test_round_half_up(self):
        """Test half-up rounding at the minor unit"""
        assert round_half_up(Decimal('100.555')) == Decimal('100.56')
        assert round_half_up(Decimal('100.545')) == Decimal('100.55')
        assert round_half_up(Decimal('100.544')) == Decimal('100.54')
        assert round_half_up(Decimal('-1.005')) == Decimal('-1.01')
        assert round_half_up(Decimal('1.0005'), 3) == Decimal('1.001')

    def test_quantize(self):
        """Test quantize follows the currency precision"""
        assert Money(Decimal('10.005'), Currency.USD).quantize().amount == Decimal('10.01')
        assert Money(Decimal('10.0005'), Currency.KWD).quantize().amount == Decimal('10.001')

    def test_is_quantized(self):
        """Test detection of over-precise amounts"""
        assert Money(Decimal('10.01'), Currency.USD).is_quantized()
        assert Money(Decimal('10'), Currency.USD).is_quantized()
        assert not Money(Decimal('10.001'), Currency.USD).is_quantized()
        assert Money(Decimal('10.001'), Currency.KWD).is_quantized()

    def test_minor_unit(self):
        """Test minor unit per currency"""
        assert Currency.USD.minor_unit == Decimal('0.01')
        assert Currency.KWD.minor_unit == Decimal('0.001')


class TestHelpers:
    """Test module helpers"""

    def test_sum_money(self):
        """Test summing, including the empty case"""
        values = [Money(Decimal('0.10'), Currency.USD)] * 10
        assert sum_money(values, Currency.USD) == Money(Decimal('1.00'), Currency.USD)
        assert sum_money([], Currency.USD) == Money.zero(Currency.USD)

    def test_decimal_from_string(self):
        """Test user-entered amounts"""
        assert decimal_from_string("1,234.50") == Decimal('1234.50')
        assert decimal_from_string("$ 99.99") == Decimal('99.99')
        assert decimal_from_string("1,000") == Decimal('1000')
        assert decimal_from_string("12,5") == Decimal('12.5')
        assert decimal_from_string("500") == Decimal('500')

    def test_decimal_from_string_invalid(self):
        """Test garbage is rejected"""
        with pytest.raises(ValueError):
            decimal_from_string("abc")
        with pytest.raises(ValueError):
            decimal_from_string("")
