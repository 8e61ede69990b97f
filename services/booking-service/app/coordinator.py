"""
Booking + payment creation saga.

The payment gateway cannot share a database transaction with the store, so
creation runs as ordered forward steps with paired compensations:

    1. Transaction row (pending)
    2. preconditions
    3. payment hold              <- compensated by cancelling the hold
    4. booking row (requested)   <- compensated by deleting the row
    5. confirm payment
    6. Transaction completed, booking payment succeeded

This is eventual consistency, not ACID atomicity: between steps 4 and 6 (or
while compensation runs) a booking row may briefly exist that later
disappears. Callers only ever get the final outcome. A compensation that
itself fails leaves the Transaction ``failed`` and raises an operator alert;
it is never reported as ``rolled_back``.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from .domain import (
    ACTIVE_STATUSES,
    ActorRole,
    Booking,
    PaymentStatus,
    Transaction,
    TransactionStatus as TS,
    new_id,
    utcnow,
)
from .errors import (
    ConflictError,
    RollbackFailure,
    TransactionNotFound,
    ValidationError,
)
from .ports import BookingStore, PaymentGateway
from .pricing import DEFAULT_PLATFORM_FEE_RATE, calculate_breakdown

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BookingRequest:
    customer_id: str
    address_id: str
    scheduled_start: datetime
    duration_minutes: int
    subtotal: int
    tip: int = 0
    worker_id: str | None = None
    notes: str | None = None
    idempotency_key: str | None = None


@dataclass(frozen=True)
class SagaOutcome:
    transaction_id: str
    booking_id: str | None
    status: TS
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == TS.COMPLETED


class TransactionCoordinator:
    def __init__(
        self,
        store: BookingStore,
        gateway: PaymentGateway,
        engine,
        alerts,
        platform_fee_rate=DEFAULT_PLATFORM_FEE_RATE,
        clock=utcnow,
    ):
        self.store = store
        self.gateway = gateway
        self.engine = engine
        self.alerts = alerts
        self.platform_fee_rate = platform_fee_rate
        self.clock = clock

    async def create_booking_with_payment(self, request: BookingRequest) -> SagaOutcome:
        if request.duration_minutes <= 0:
            raise ValidationError("duration_minutes must be positive")
        breakdown = calculate_breakdown(request.subtotal, request.tip, self.platform_fee_rate)

        if request.idempotency_key:
            existing = await self.store.find_transaction_by_key(request.idempotency_key)
            if existing is not None:
                return self._replay(existing)

        # step 1
        tx = await self.store.insert_transaction(
            Transaction(
                id=new_id(),
                customer_id=request.customer_id,
                worker_id=request.worker_id,
                amount=breakdown.total,
                platform_fee=breakdown.platform_fee,
                worker_amount=breakdown.worker_amount,
                tip=breakdown.tip,
                idempotency_key=request.idempotency_key,
                created_at=self.clock(),
            )
        )
        logger.info("saga %s started for customer %s", tx.id, request.customer_id)

        intent_id = None
        booking = None
        try:
            # step 2
            payout_destination = await self._check_preconditions(request)

            # step 3
            intent_id = await self.gateway.create_hold(
                breakdown.total,
                breakdown.platform_fee,
                payout_destination,
                metadata={"transaction_id": tx.id, "customer_id": request.customer_id},
            )
            tx = await self.store.update_transaction(tx.id, TS.PENDING, status=TS.PROCESSING, payment_intent_id=intent_id)

            # step 4
            now = self.clock()
            booking = await self.store.insert_booking(
                Booking(
                    id=new_id(),
                    customer_id=request.customer_id,
                    worker_id=request.worker_id,
                    address_id=request.address_id,
                    scheduled_start=request.scheduled_start,
                    duration_minutes=request.duration_minutes,
                    subtotal=breakdown.subtotal,
                    platform_fee=breakdown.platform_fee,
                    worker_amount=breakdown.worker_amount,
                    tip=breakdown.tip,
                    total=breakdown.total,
                    payment_intent_id=intent_id,
                    payment_status=PaymentStatus.PENDING,
                    notes=request.notes,
                    created_at=now,
                    updated_at=now,
                )
            )
            tx = await self.store.update_transaction(tx.id, TS.PROCESSING, booking_id=booking.id)

            # steps 5-6
            tx, booking = await self._confirm(tx, booking)
        except Exception as e:
            return await self._compensate(tx, intent_id, booking, e)

        await self.engine.enter_initial_state(booking)
        logger.info("saga %s completed: booking %s", tx.id, booking.id)
        return SagaOutcome(transaction_id=tx.id, booking_id=booking.id, status=TS.COMPLETED)

    async def confirm_transaction(self, transaction_id: str) -> SagaOutcome:
        """
        Idempotent confirm. A completed transaction is returned as-is; one
        still processing with a booking finishes steps 5-6.
        """
        tx = await self.store.get_transaction(transaction_id)
        if tx is None:
            raise TransactionNotFound(transaction_id)

        if tx.status == TS.COMPLETED:
            logger.info("confirm on completed transaction %s is a no-op", tx.id)
            return SagaOutcome(transaction_id=tx.id, booking_id=tx.booking_id, status=tx.status)

        if tx.status != TS.PROCESSING or not tx.booking_id:
            raise ValidationError(f"Transaction {tx.id} is {tx.status.value} and cannot be confirmed")

        booking = await self.store.get_booking(tx.booking_id)
        if booking is None:
            raise ValidationError(f"Transaction {tx.id} references a missing booking")

        try:
            tx, booking = await self._confirm(tx, booking)
        except ConflictError:
            # a concurrent confirm finished first
            current = await self.store.get_transaction(tx.id)
            if current is not None and current.status == TS.COMPLETED:
                return SagaOutcome(transaction_id=current.id, booking_id=current.booking_id, status=current.status)
            raise
        except Exception as e:
            return await self._compensate(tx, tx.payment_intent_id, booking, e)

        await self.engine.enter_initial_state(booking)
        return SagaOutcome(transaction_id=tx.id, booking_id=booking.id, status=TS.COMPLETED)

    async def _confirm(self, tx: Transaction, booking: Booking):
        await self.gateway.confirm(tx.payment_intent_id)
        # booking first: a failure here still leaves the transaction open for compensation
        booking = await self.store.set_payment_status(booking.id, PaymentStatus.SUCCEEDED, expected=PaymentStatus.PENDING)
        tx = await self.store.update_transaction(
            tx.id, TS.PROCESSING, status=TS.COMPLETED, completed_at=self.clock()
        )
        return tx, booking

    async def _check_preconditions(self, request: BookingRequest) -> str | None:
        customer = await self.store.get_user(request.customer_id)
        if customer is None or customer.role != ActorRole.CUSTOMER or not customer.is_active:
            raise ValidationError(f"Customer {request.customer_id} does not exist or is inactive")

        address = await self.store.get_address(request.address_id)
        if address is None or address.user_id != request.customer_id:
            raise ValidationError(f"Address {request.address_id} does not belong to customer {request.customer_id}")

        if not request.worker_id:
            return None

        worker = await self.store.get_user(request.worker_id)
        if worker is None or worker.role != ActorRole.WORKER or not worker.is_active:
            raise ValidationError(f"Worker {request.worker_id} does not exist or is inactive")

        end = request.scheduled_start + timedelta(minutes=request.duration_minutes)
        if await self.store.has_overlapping_booking(request.worker_id, request.scheduled_start, end, ACTIVE_STATUSES):
            raise ValidationError(f"Worker {request.worker_id} already has a booking in that window")

        profile = await self.store.get_worker_profile(request.worker_id)
        return profile.payout_destination if profile else None

    async def _compensate(self, tx: Transaction, intent_id: str | None, booking: Booking | None, cause: Exception) -> SagaOutcome:
        logger.warning("saga %s failed: %s; compensating", tx.id, cause)
        booking_id = booking.id if booking else None
        errors = []
        # each compensation runs even if an earlier one failed
        if booking is not None:
            try:
                await self.store.delete_booking(booking.id)
            except Exception as e:
                logger.error("saga %s could not delete booking %s: %s", tx.id, booking.id, e)
                errors.append(e)
        if intent_id:
            try:
                await self.gateway.cancel(intent_id)
            except Exception as e:
                logger.error("saga %s could not cancel hold %s: %s", tx.id, intent_id, e)
                errors.append(e)

        if errors:
            failure = RollbackFailure(tx.id, cause, errors)
            await self._finish(tx, TS.FAILED, str(failure))
            await self.alerts.raise_alert(
                "rollback_failed",
                str(failure),
                transaction_id=tx.id,
                booking_id=booking_id,
                payment_intent_id=intent_id,
            )
            return SagaOutcome(transaction_id=tx.id, booking_id=booking_id, status=TS.FAILED, error=str(failure))

        await self._finish(tx, TS.ROLLED_BACK, str(cause))
        logger.info("saga %s rolled back", tx.id)
        return SagaOutcome(transaction_id=tx.id, booking_id=None, status=TS.ROLLED_BACK, error=str(cause))

    async def _finish(self, tx: Transaction, status: TS, reason: str) -> None:
        try:
            current = await self.store.get_transaction(tx.id)
            if current is None or current.status.is_terminal:
                logger.error("saga %s already terminal; cannot mark %s", tx.id, status.value)
                return
            await self.store.update_transaction(
                tx.id, current.status, status=status, error_reason=reason, completed_at=self.clock()
            )
        except Exception as e:
            # left open; the stale transaction sweeper will fail it
            logger.exception("could not mark saga %s %s", tx.id, status.value)
            await self.alerts.raise_alert(
                "transaction_unrecorded",
                f"saga outcome {status.value} could not be recorded",
                transaction_id=tx.id,
                error=e,
            )

    def _replay(self, tx: Transaction) -> SagaOutcome:
        if not tx.status.is_terminal:
            raise ConflictError(f"Request {tx.idempotency_key} is still being processed")
        booking_id = tx.booking_id if tx.status != TS.ROLLED_BACK else None
        return SagaOutcome(transaction_id=tx.id, booking_id=booking_id, status=tx.status, error=tx.error_reason)
