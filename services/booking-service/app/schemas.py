from datetime import datetime

from pydantic import BaseModel

from .domain import PENDING_RESOLUTION, Booking, StatusUpdate, Transaction


class CreateBookingRequest(BaseModel):
    customer_id: str | None = None  # admins book on behalf of a customer
    worker_id: str | None = None  # None = open job
    address_id: str
    scheduled_start: datetime
    duration_minutes: int
    subtotal: int
    tip: int = 0
    notes: str | None = None
    idempotency_key: str | None = None


class CreateBookingResponse(BaseModel):
    transaction_id: str
    booking_id: str
    status: str


class AdvanceStatusRequest(BaseModel):
    status: str
    notes: str | None = None
    metadata: dict | None = None


class CancelBookingRequest(BaseModel):
    reason: str | None = None
    refund_pct_override: int | None = None


class BookingResponse(BaseModel):
    booking_id: str
    status: str
    display_status: str
    status_version: int
    customer_id: str
    worker_id: str | None = None
    address_id: str
    scheduled_start: datetime
    duration_minutes: int
    subtotal: int
    platform_fee: int
    worker_amount: int
    tip: int
    total: int
    payment_status: str
    notes: str | None = None
    created_at: datetime
    updated_at: datetime
    en_route_at: datetime | None = None
    arrived_at: datetime | None = None
    actual_start: datetime | None = None
    actual_end: datetime | None = None
    cancelled_by: str | None = None
    cancellation_reason: str | None = None
    refund_amount: int = 0

    @classmethod
    def from_booking(cls, booking: Booking) -> "BookingResponse":
        display = "pending_resolution" if booking.status in PENDING_RESOLUTION else booking.status.value
        return cls(
            booking_id=booking.id,
            status=booking.status.value,
            display_status=display,
            status_version=booking.status_version,
            customer_id=booking.customer_id,
            worker_id=booking.worker_id,
            address_id=booking.address_id,
            scheduled_start=booking.scheduled_start,
            duration_minutes=booking.duration_minutes,
            subtotal=booking.subtotal,
            platform_fee=booking.platform_fee,
            worker_amount=booking.worker_amount,
            tip=booking.tip,
            total=booking.total,
            payment_status=booking.payment_status.value,
            notes=booking.notes,
            created_at=booking.created_at,
            updated_at=booking.updated_at,
            en_route_at=booking.en_route_at,
            arrived_at=booking.arrived_at,
            actual_start=booking.actual_start,
            actual_end=booking.actual_end,
            cancelled_by=booking.cancelled_by,
            cancellation_reason=booking.cancellation_reason,
            refund_amount=booking.refund_amount,
        )


class StatusUpdateResponse(BaseModel):
    id: str
    booking_id: str
    previous_status: str
    new_status: str
    updated_by: str
    actor_role: str
    timestamp: datetime
    notes: str | None = None
    metadata: dict = {}

    @classmethod
    def from_update(cls, update: StatusUpdate) -> "StatusUpdateResponse":
        return cls(
            id=update.id,
            booking_id=update.booking_id,
            previous_status=update.previous_status.value,
            new_status=update.new_status.value,
            updated_by=update.updated_by,
            actor_role=update.actor_role.value,
            timestamp=update.timestamp,
            notes=update.notes,
            metadata=update.metadata,
        )


class TransitionResponse(BaseModel):
    booking: BookingResponse
    update: StatusUpdateResponse


class ClaimResponse(BaseModel):
    booking_id: str
    claimed: bool
    status: str


class TransactionResponse(BaseModel):
    transaction_id: str
    status: str
    customer_id: str
    worker_id: str | None = None
    booking_id: str | None = None
    amount: int
    platform_fee: int
    worker_amount: int
    tip: int
    error_reason: str | None = None
    created_at: datetime
    completed_at: datetime | None = None

    @classmethod
    def from_transaction(cls, tx: Transaction) -> "TransactionResponse":
        return cls(
            transaction_id=tx.id,
            status=tx.status.value,
            customer_id=tx.customer_id,
            worker_id=tx.worker_id,
            booking_id=tx.booking_id,
            amount=tx.amount,
            platform_fee=tx.platform_fee,
            worker_amount=tx.worker_amount,
            tip=tx.tip,
            error_reason=tx.error_reason,
            created_at=tx.created_at,
            completed_at=tx.completed_at,
        )
