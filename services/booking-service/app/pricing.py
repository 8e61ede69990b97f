from decimal import Decimal, ROUND_HALF_UP

from .domain import PaymentBreakdown
from .errors import ValidationError

DEFAULT_PLATFORM_FEE_RATE = Decimal("0.30")


def calculate_breakdown(subtotal: int, tip: int = 0, platform_fee_rate=DEFAULT_PLATFORM_FEE_RATE) -> PaymentBreakdown:
    """
    Split a booking price (integer cents) between platform and worker.

    The tip goes to the worker in full and is not subject to the platform fee.
    """
    rate = Decimal(str(platform_fee_rate))
    if subtotal < 0 or tip < 0:
        raise ValidationError("subtotal and tip must not be negative")
    if rate < 0 or rate > 1:
        raise ValidationError(f"platform fee rate {rate} must be between 0 and 1")

    platform_fee = int((Decimal(subtotal) * rate).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    return PaymentBreakdown(
        subtotal=subtotal,
        platform_fee=platform_fee,
        worker_amount=subtotal - platform_fee + tip,
        tip=tip,
        total=subtotal + tip,
    )
