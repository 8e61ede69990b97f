import logging

from .domain import Booking, PaymentStatus, UNCAPTURED
from .policy import RefundDecision
from .ports import BookingStore, PaymentGateway

logger = logging.getLogger(__name__)


class RefundExecutor:
    """
    Moves money for a cancellation that already committed.

    Uncaptured holds are never refunded: a full refund releases the hold, a
    partial one captures only the part the customer keeps paying for.
    Captured funds are refunded through the gateway.
    """

    def __init__(self, store: BookingStore, gateway: PaymentGateway):
        self.store = store
        self.gateway = gateway

    async def execute(self, booking: Booking, decision: RefundDecision, reason: str) -> Booking:
        intent_id = booking.payment_intent_id
        if not intent_id:
            logger.info("booking %s has no payment intent; nothing to refund", booking.id)
            return booking

        current = booking.payment_status
        amount = decision.refund_amount

        if current in UNCAPTURED:
            if amount >= booking.total:
                await self.gateway.cancel(intent_id)
                new_status = PaymentStatus.CANCELLED
            else:
                await self.gateway.capture(intent_id, booking.total - amount)
                new_status = PaymentStatus.CAPTURED
        elif current == PaymentStatus.CAPTURED:
            if amount <= 0:
                logger.info("booking %s: %s keeps the full charge", booking.id, decision.rule)
                return booking
            await self.gateway.refund(intent_id, amount, reason)
            new_status = PaymentStatus.REFUNDED if amount >= booking.total else PaymentStatus.PARTIALLY_REFUNDED
        else:
            logger.warning(
                "booking %s payment already %s; skipping refund of %s",
                booking.id, current.value, amount,
            )
            return booking

        logger.info(
            "booking %s refund executed rule=%s pct=%s amount=%s payment=%s",
            booking.id, decision.rule, decision.refund_pct, amount, new_status.value,
        )
        return await self.store.set_payment_status(booking.id, new_status, expected=current)
