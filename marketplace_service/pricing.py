"""
pricing.py — Commission and Payout Arithmetic

Pure functions that split a customer-facing price into the platform commission
and the producer's earnings. Everything is `Decimal`, quantized to whole cents
with ROUND_HALF_UP, and earnings are derived by subtraction so that
commission + earnings always equals the price exactly.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable

from .errors import InvalidCommissionRate, InvalidPrice

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def to_decimal(value) -> Decimal:
    """Converts ints, strings and Decimals to Decimal. Floats go through str() to avoid binary noise."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def quantize(amount) -> Decimal:
    return to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def validate_commission_rate(rate) -> Decimal:
    """
    Parses and checks a commission rate.

    Args:
        rate: Percentage as Decimal, int or numeric string.
    Returns:
        Decimal: The rate.
    Raises:
        InvalidCommissionRate: If the rate is not a number or lies outside [0, 100].
    """
    try:
        value = to_decimal(rate)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidCommissionRate(rate)
    if not value.is_finite() or value < 0 or value > HUNDRED:
        raise InvalidCommissionRate(rate)
    return value


def validate_price(price) -> Decimal:
    """Parses a price. Raises InvalidPrice unless it is a finite amount >= 0."""
    try:
        value = to_decimal(price)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidPrice(price)
    if not value.is_finite() or value < 0:
        raise InvalidPrice(price)
    return value


def commission_amount(price, rate) -> Decimal:
    rate = validate_commission_rate(rate)
    return quantize(validate_price(price) * rate / HUNDRED)


def producer_earnings(price, rate) -> Decimal:
    return quantize(validate_price(price)) - commission_amount(price, rate)


@dataclass(frozen=True)
class PriceBreakdown:
    customer_price: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    producer_earnings: Decimal

    def as_dict(self) -> dict:
        return {
            "customerPrice": str(self.customer_price),
            "commissionRate": str(self.commission_rate),
            "commissionAmount": str(self.commission_amount),
            "producerEarnings": str(self.producer_earnings),
        }


def breakdown(price, rate) -> PriceBreakdown:
    """
    Splits a price into commission and producer earnings.

    Args:
        price: Non-negative customer-facing price.
        rate: Commission percentage in [0, 100].
    Returns:
        PriceBreakdown: All four amounts, commission + earnings == price.
    Raises:
        InvalidCommissionRate: If the rate is out of range.
        InvalidPrice: If the price is negative or not a number.
    """
    rate = validate_commission_rate(rate)
    customer_price = quantize(validate_price(price))
    commission = commission_amount(customer_price, rate)
    return PriceBreakdown(
        customer_price=customer_price,
        commission_rate=rate,
        commission_amount=commission,
        producer_earnings=customer_price - commission,
    )


def sum_amounts(amounts: Iterable) -> Decimal:
    return quantize(sum((to_decimal(a) for a in amounts), Decimal("0")))


def to_minor_units(amount) -> int:
    """Converts a major-unit amount (e.g. 149.99) to integer minor units (14999)."""
    return int((quantize(amount) * HUNDRED).to_integral_value(rounding=ROUND_HALF_UP))


def format_amount(amount, currency: str) -> str:
    return f"{quantize(amount)} {currency}"
