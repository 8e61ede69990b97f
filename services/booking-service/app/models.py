from sqlalchemy import JSON, Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, String

from shared.database import Base

from .domain import BookingStatus


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    user_id = Column(String, unique=True, nullable=False, index=True)
    role = Column(String, nullable=False)  # customer/worker/admin
    is_active = Column(Boolean, nullable=False, default=True)


class WorkerProfile(Base):
    __tablename__ = "worker_profiles"

    id = Column(Integer, primary_key=True)
    user_id = Column(String, ForeignKey("users.user_id"), unique=True, nullable=False, index=True)

    background_check_status = Column(String, nullable=True)  # pending/cleared/failed
    payout_onboarding_complete = Column(Boolean, nullable=False, default=False)
    payout_destination = Column(String, nullable=True)

    no_show_count = Column(Integer, nullable=False, default=0)
    reliability_score = Column(Integer, nullable=False, default=100)


class Address(Base):
    __tablename__ = "addresses"

    id = Column(Integer, primary_key=True)
    address_id = Column(String, unique=True, nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.user_id"), nullable=False, index=True)


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint(
            "status IN (" + ",".join(f"'{s.value}'" for s in BookingStatus) + ")",
            name="ck_bookings_status",
        ),
    )

    id = Column(Integer, primary_key=True)
    booking_id = Column(String, unique=True, nullable=False, index=True)

    customer_id = Column(String, nullable=False, index=True)
    worker_id = Column(String, nullable=True, index=True)
    address_id = Column(String, nullable=False)

    status = Column(String, nullable=False, index=True)
    status_version = Column(Integer, nullable=False, default=0)

    scheduled_start = Column(DateTime(timezone=True), nullable=False)
    duration_minutes = Column(Integer, nullable=False)

    # integer cents
    subtotal = Column(Integer, nullable=False)
    platform_fee = Column(Integer, nullable=False)
    worker_amount = Column(Integer, nullable=False)
    tip = Column(Integer, nullable=False, default=0)
    total = Column(Integer, nullable=False)

    payment_intent_id = Column(String, nullable=True)
    payment_status = Column(String, nullable=False)
    notes = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    en_route_at = Column(DateTime(timezone=True), nullable=True)
    arrived_at = Column(DateTime(timezone=True), nullable=True)
    actual_start = Column(DateTime(timezone=True), nullable=True)
    actual_end = Column(DateTime(timezone=True), nullable=True)

    cancelled_by = Column(String, nullable=True)
    cancellation_reason = Column(String, nullable=True)
    refund_amount = Column(Integer, nullable=False, default=0)


class StatusUpdate(Base):
    __tablename__ = "status_updates"

    id = Column(Integer, primary_key=True)
    update_id = Column(String, unique=True, nullable=False)
    booking_id = Column(String, nullable=False, index=True)

    previous_status = Column(String, nullable=False)
    new_status = Column(String, nullable=False, index=True)
    updated_by = Column(String, nullable=False)
    actor_role = Column(String, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    notes = Column(String, nullable=True)
    details = Column("metadata", JSON, nullable=False, default=dict)


class PaymentBookingTransaction(Base):
    __tablename__ = "payment_booking_transactions"

    id = Column(Integer, primary_key=True)
    transaction_id = Column(String, unique=True, nullable=False, index=True)
    idempotency_key = Column(String, unique=True, nullable=True)

    customer_id = Column(String, nullable=False, index=True)
    worker_id = Column(String, nullable=True)
    booking_id = Column(String, nullable=True, index=True)
    payment_intent_id = Column(String, nullable=True)

    amount = Column(Integer, nullable=False)
    platform_fee = Column(Integer, nullable=False)
    worker_amount = Column(Integer, nullable=False)
    tip = Column(Integer, nullable=False, default=0)

    status = Column(String, nullable=False, index=True)  # pending/processing/completed/failed/rolled_back
    error_reason = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)


class Payout(Base):
    __tablename__ = "payouts"

    id = Column(Integer, primary_key=True)
    payout_id = Column(String, unique=True, nullable=False)
    booking_id = Column(String, unique=True, nullable=False)
    worker_id = Column(String, nullable=False, index=True)

    amount = Column(Integer, nullable=False)
    status = Column(String, nullable=False)  # processing/completed/failed
    transfer_id = Column(String, nullable=True)
    error_message = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
