import logging

from .domain import SYSTEM, BookingStatus, Payout, PaymentStatus, PayoutStatus, new_id, utcnow
from .errors import ConflictError, ExternalServiceError
from .ports import BookingStore, PaymentGateway

logger = logging.getLogger(__name__)


class PaymentSettlement:
    """
    Escrow capture after completion, and the delayed worker payout after
    ``paid``. Both are driven by durable tasks and re-read the booking first.
    """

    def __init__(self, store: BookingStore, gateway: PaymentGateway, engine, alerts, clock=utcnow):
        self.store = store
        self.gateway = gateway
        self.engine = engine
        self.alerts = alerts
        self.clock = clock

    async def settle(self, booking_id: str):
        booking = await self.store.get_booking(booking_id)
        if booking is None or booking.status != BookingStatus.COMPLETED:
            logger.info("settle skipped for %s: no longer completed", booking_id)
            return None

        booking = await self._capture(booking)

        try:
            return await self.engine.apply_transition(
                booking.id,
                BookingStatus.PAID,
                SYSTEM,
                notes="Payment captured",
                metadata={"amount": booking.worker_amount},
                expected_status=BookingStatus.COMPLETED,
            )
        except ConflictError:
            logger.info("settle for %s lost to a concurrent transition", booking.id)
            return None

    async def payout(self, booking_id: str) -> Payout | None:
        booking = await self.store.get_booking(booking_id)
        if booking is None or booking.status not in (BookingStatus.PAID, BookingStatus.REVIEWED):
            logger.info("payout skipped for %s: booking not paid", booking_id)
            return None
        if not booking.worker_id:
            logger.warning("payout skipped for %s: no worker assigned", booking_id)
            return None
        # never transfer against an authorization that was not captured
        booking = await self._capture(booking)

        payout = Payout(
            id=new_id(),
            booking_id=booking.id,
            worker_id=booking.worker_id,
            amount=booking.worker_amount,
            created_at=self.clock(),
        )
        if not await self.store.insert_payout(payout):
            logger.info("payout for booking %s already exists", booking.id)
            return await self.store.get_payout_for_booking(booking.id)

        profile = await self.store.get_worker_profile(booking.worker_id)
        if profile is None or not profile.payout_onboarding_complete or not profile.payout_destination:
            return await self._fail(payout, "worker payout onboarding incomplete")

        try:
            transfer_id = await self.gateway.transfer(
                profile.payout_destination,
                payout.amount,
                metadata={"booking_id": booking.id, "payout_id": payout.id},
            )
        except ExternalServiceError as e:
            return await self._fail(payout, str(e))

        logger.info("paid out %s to worker %s for booking %s", payout.amount, payout.worker_id, booking.id)
        return await self.store.update_payout(
            payout.id,
            status=PayoutStatus.COMPLETED,
            transfer_id=transfer_id,
            processed_at=self.clock(),
        )

    async def _capture(self, booking):
        if booking.payment_status != PaymentStatus.SUCCEEDED:
            return booking
        await self.gateway.capture(booking.payment_intent_id)
        booking = await self.store.set_payment_status(
            booking.id, PaymentStatus.CAPTURED, expected=PaymentStatus.SUCCEEDED
        )
        logger.info("captured %s for booking %s", booking.total, booking.id)
        return booking

    async def _fail(self, payout: Payout, reason: str) -> Payout:
        payout = await self.store.update_payout(
            payout.id, status=PayoutStatus.FAILED, error_message=reason, processed_at=self.clock()
        )
        await self.alerts.raise_alert(
            "payout_failed",
            reason,
            booking_id=payout.booking_id,
            worker_id=payout.worker_id,
            amount=payout.amount,
        )
        return payout
