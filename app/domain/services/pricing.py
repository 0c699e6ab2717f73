"""
Money arithmetic for bookings.

Amounts are ``Decimal`` with two places. Each amount handed to the payment
provider is rounded exactly once, here, from unrounded inputs.
"""
from decimal import Decimal, ROUND_HALF_UP

from app.core.config import settings

MONEY_QUANT = Decimal("0.01")
_HUNDRED = Decimal("100")


def to_money(value) -> Decimal:
    """Round any numeric input to two decimal places (half up)"""
    return Decimal(str(value)).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def to_cents(amount) -> int:
    """Money value to integer minor units for the provider API"""
    return int((Decimal(str(amount)) * _HUNDRED).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def transfer_amount(final_price, commission_rate) -> Decimal:
    """Traveler's share: final_price - final_price * rate / 100, rounded once.

    >>> transfer_amount(Decimal("100"), Decimal("15"))
    Decimal('85.00')
    """
    price = Decimal(str(final_price))
    rate = Decimal(str(commission_rate))
    return to_money(price - price * rate / _HUNDRED)


def commission_amount(final_price, commission_rate) -> Decimal:
    """Platform's share, derived so that commission + transfer == final price"""
    return to_money(final_price) - transfer_amount(final_price, commission_rate)


def processor_fee(amount) -> Decimal:
    """Card processing fee charged on ``amount`` (percentage plus fixed part)"""
    value = Decimal(str(amount))
    if value <= 0:
        return Decimal("0.00")
    return to_money(value * settings.PROCESSOR_FEE_PERCENT / _HUNDRED + settings.PROCESSOR_FEE_FIXED)
