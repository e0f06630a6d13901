#!/usr/bin/env python3
"""
Decimal Precision Utilities for Financial Calculations
Enforces consistent Decimal usage across all monetary operations:
parsing of HTTP input, currency conversion into RWF and exact revenue splits.
"""

import logging
import re
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Mapping, Tuple, Union

from models import Currency
from utils.exception_handler import InvalidAmount

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 28

Numeric = Union[str, int, float, Decimal]


@dataclass(frozen=True)
class Money:
    """An amount in a specific currency"""
    amount: Decimal
    currency: Currency

    def __str__(self) -> str:
        return f"{self.amount} {self.currency.value}"


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with proper precision"""

    RWF_PRECISION = Decimal("0.01")  # Stored precision for settlement amounts
    RATE_PRECISION = Decimal("0.000001")
    ZERO = Decimal("0")

    # Stripe treats these as zero-decimal currencies
    ZERO_DECIMAL_CURRENCIES = frozenset({Currency.RWF, Currency.XOF})

    # "1111" typed for "1+1+1+1": integer part made of one repeated non-zero digit
    REPEATED_DIGIT_PATTERN = re.compile(r"^([1-9])\1{3,}$")
    MAX_AMOUNT = Decimal("999999999999")

    @classmethod
    def parse(cls, raw: Numeric, context: str = "amount") -> Decimal:
        """Parse an amount from an HTTP body value (string, int, float or Decimal)"""
        if raw is None or isinstance(raw, bool):
            raise InvalidAmount(f"Invalid {context}: a numeric value is required")

        if isinstance(raw, Decimal):
            value = raw
        else:
            text = str(raw).strip().replace(",", "").replace(" ", "")
            if not text:
                raise InvalidAmount(f"Invalid {context}: empty value")
            try:
                value = Decimal(text)
            except InvalidOperation:
                raise InvalidAmount(f"Invalid {context}: '{raw}' is not a number")

        if not value.is_finite():
            raise InvalidAmount(f"Invalid {context}: value must be finite")
        if value < 0:
            raise InvalidAmount(f"Invalid {context}: value cannot be negative")
        if value > cls.MAX_AMOUNT:
            raise InvalidAmount(f"Invalid {context}: value is too large")

        integer_part = format(value, "f").split(".")[0]
        if cls.REPEATED_DIGIT_PATTERN.match(integer_part):
            logger.warning(f"⚠️ AMOUNT_REJECTED: Repeated-digit {context} '{raw}' looks like concatenated input")
            raise InvalidAmount(
                f"Invalid {context}: '{raw}' looks malformed (repeated digits). Please re-enter the amount"
            )

        return value

    @classmethod
    def parse_currency(cls, raw: Union[str, Currency, None], default: Currency = Currency.RWF) -> Currency:
        if raw is None or raw == "":
            return default
        if isinstance(raw, Currency):
            return raw
        try:
            return Currency(str(raw).strip().upper())
        except ValueError:
            raise InvalidAmount(f"Unsupported currency: {raw}")

    @classmethod
    def parse_money(cls, raw: Numeric, currency: Union[str, Currency, None] = None) -> Money:
        """Parse an amount, keeping the currency it was expressed in"""
        return Money(amount=cls.parse(raw), currency=cls.parse_currency(currency))

    @classmethod
    def quantize(cls, amount: Numeric) -> Decimal:
        """Quantize to stored precision (2 decimal places)"""
        return Decimal(str(amount)).quantize(cls.RWF_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def _rate(cls, currency: Currency, rates: Mapping[str, Decimal]) -> Decimal:
        rate = rates.get(currency.value)
        if rate is None:
            raise InvalidAmount(f"No exchange rate configured for {currency.value}")
        rate = Decimal(str(rate))
        if not rate.is_finite() or rate <= 0:
            raise InvalidAmount(f"Invalid exchange rate configured for {currency.value}")
        return rate

    @classmethod
    def convert(
        cls,
        amount: Decimal,
        from_currency: Currency,
        to_currency: Currency,
        rates: Mapping[str, Decimal],
    ) -> Decimal:
        """Convert using the fixed rate table (rates are RWF per unit)"""
        if from_currency == to_currency:
            return cls.quantize(amount)
        in_rwf = amount * cls._rate(from_currency, rates)
        return cls.quantize(in_rwf / cls._rate(to_currency, rates))

    @classmethod
    def to_rwf(cls, money: Money, rates: Mapping[str, Decimal]) -> Tuple[Decimal, Decimal]:
        """Settlement amount in RWF and the rate applied"""
        rate = Decimal("1") if money.currency == Currency.RWF else cls._rate(money.currency, rates)
        converted = cls.convert(money.amount, money.currency, Currency.RWF, rates)
        if money.currency != Currency.RWF:
            logger.info(f"💱 CURRENCY_CONVERTED: {money} -> {converted} RWF (rate {rate})")
        return converted, rate.quantize(cls.RATE_PRECISION)

    @classmethod
    def distribute(cls, total: Numeric, pct: Union[int, Decimal]) -> Tuple[Decimal, Decimal]:
        """
        Split total into (pct share, remainder share) with a + b == total exactly.

        Both shares are truncated to cents, then the leftover cent goes to the
        larger share (the first share on a 50/50 tie).
        """
        total = cls.quantize(total)
        pct = Decimal(str(pct))
        if pct < 0 or pct > 100:
            raise InvalidAmount(f"Invalid percentage: {pct}")

        first = (total * pct / 100).quantize(cls.RWF_PRECISION, rounding=ROUND_DOWN)
        second = (total * (100 - pct) / 100).quantize(cls.RWF_PRECISION, rounding=ROUND_DOWN)
        remainder = total - first - second
        if remainder:
            if pct >= 50:
                first += remainder
            else:
                second += remainder
        return first, second

    @classmethod
    def to_minor_units(cls, amount: Decimal, currency: Currency) -> int:
        """Integer amount for card gateways (cents, or whole units for zero-decimal currencies)"""
        if currency in cls.ZERO_DECIMAL_CURRENCIES:
            return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @classmethod
    def to_integer_rwf(cls, amount: Decimal) -> int:
        """Mobile money collects whole francs"""
        return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
