"""
Regression Tests for Decimal Precision in Financial Operations
Amount parsing, currency conversion and exact revenue splits
"""

import pytest
from decimal import Decimal

from models import Currency
from utils.decimal_precision import MonetaryDecimal, Money
from utils.exception_handler import InvalidAmount

RATES = {"RWF": Decimal("1"), "USD": Decimal("1200"), "EUR": Decimal("1300")}


class TestAmountParsing:
    """HTTP body amounts arrive as strings, ints or floats"""

    @pytest.mark.parametrize("raw,expected", [
        ("1000", Decimal("1000")),
        (1500, Decimal("1500")),
        ("2,500", Decimal("2500")),
        (" 750.50 ", Decimal("750.50")),
        (Decimal("12.5"), Decimal("12.5")),
    ])
    def test_accepts_common_shapes(self, raw, expected):
        assert MonetaryDecimal.parse(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "abc", True, "-10", "NaN", "Infinity"])
    def test_rejects_invalid_values(self, raw):
        with pytest.raises(InvalidAmount):
            MonetaryDecimal.parse(raw)

    def test_rejects_repeated_digit_amounts(self):
        """'1111' is what a user typing 1+1+1+1 produces"""
        with pytest.raises(InvalidAmount) as exc_info:
            MonetaryDecimal.parse("1111")
        assert "repeated digits" in exc_info.value.message

    def test_repeated_digits_below_four_are_allowed(self):
        assert MonetaryDecimal.parse("111") == Decimal("111")
        assert MonetaryDecimal.parse("1000") == Decimal("1000")

    def test_rejects_absurdly_large_amounts(self):
        with pytest.raises(InvalidAmount):
            MonetaryDecimal.parse("1000000000000000")

    def test_parse_money_defaults_to_rwf(self):
        money = MonetaryDecimal.parse_money("500")
        assert money == Money(Decimal("500"), Currency.RWF)

    def test_unknown_currency_rejected(self):
        with pytest.raises(InvalidAmount):
            MonetaryDecimal.parse_currency("BTC")

    def test_currency_is_case_insensitive(self):
        assert MonetaryDecimal.parse_currency("usd") == Currency.USD


class TestCurrencyConversion:

    def test_rwf_is_unchanged(self):
        amount, rate = MonetaryDecimal.to_rwf(Money(Decimal("1000"), Currency.RWF), RATES)
        assert amount == Decimal("1000.00")
        assert rate == Decimal("1")

    def test_usd_converted_with_fixed_rate(self):
        amount, rate = MonetaryDecimal.to_rwf(Money(Decimal("2.50"), Currency.USD), RATES)
        assert amount == Decimal("3000.00")
        assert rate == Decimal("1200")

    def test_missing_rate_rejected(self):
        with pytest.raises(InvalidAmount):
            MonetaryDecimal.to_rwf(Money(Decimal("10"), Currency.GHS), RATES)

    def test_cross_currency_goes_through_rwf(self):
        assert MonetaryDecimal.convert(Decimal("13"), Currency.EUR, Currency.USD, RATES) == Decimal("14.08")


class TestDistribution:
    """Shares must always add back to the total"""

    @pytest.mark.parametrize("total", ["1000", "999", "1", "0.03", "12345.67", "333.33"])
    @pytest.mark.parametrize("pct", [0, 30, 50, 70, 100])
    def test_shares_sum_to_total(self, total, pct):
        first, second = MonetaryDecimal.distribute(Decimal(total), pct)
        assert first + second == MonetaryDecimal.quantize(total)
        assert first >= 0 and second >= 0

    def test_standard_split(self):
        assert MonetaryDecimal.distribute(Decimal("1000"), 70) == (Decimal("700.00"), Decimal("300.00"))

    def test_leftover_cent_goes_to_larger_share(self):
        creator, platform = MonetaryDecimal.distribute(Decimal("0.01"), 70)
        assert creator == Decimal("0.01")
        assert platform == Decimal("0.00")

        creator, platform = MonetaryDecimal.distribute(Decimal("0.01"), 30)
        assert creator == Decimal("0.00")
        assert platform == Decimal("0.01")

    def test_rejects_out_of_range_percentage(self):
        with pytest.raises(InvalidAmount):
            MonetaryDecimal.distribute(Decimal("100"), 101)


class TestGatewayUnits:

    def test_zero_decimal_currency_uses_whole_units(self):
        assert MonetaryDecimal.to_minor_units(Decimal("1500"), Currency.RWF) == 1500

    def test_usd_uses_cents(self):
        assert MonetaryDecimal.to_minor_units(Decimal("2.505"), Currency.USD) == 251

    def test_mobile_money_collects_whole_francs(self):
        assert MonetaryDecimal.to_integer_rwf(Decimal("999.50")) == 1000
        assert MonetaryDecimal.to_integer_rwf(Decimal("999.49")) == 999
