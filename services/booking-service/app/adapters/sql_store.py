"""
SQLAlchemy implementation of the booking store.

Conditional writes are single ``UPDATE ... WHERE`` statements; the rowcount
decides the winner. A transition's UPDATE and its status_updates INSERT
share one database transaction.
"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .. import models
from ..domain import (
    ActorRole,
    Address,
    Booking,
    BookingStatus,
    Payout,
    PaymentStatus,
    PayoutStatus,
    StatusUpdate,
    Transaction,
    TransactionStatus,
    UserAccount,
    WorkerProfile,
    utcnow,
)
from ..errors import BookingNotFound, ConflictError, PersistenceError, TransactionNotFound

_BOOKING_FIELDS = (
    "customer_id", "worker_id", "address_id", "scheduled_start", "duration_minutes",
    "subtotal", "platform_fee", "worker_amount", "tip", "total",
    "payment_intent_id", "notes", "created_at", "updated_at", "en_route_at", "arrived_at",
    "actual_start", "actual_end", "cancelled_by", "cancellation_reason", "refund_amount",
)

_TX_FIELDS = (
    "customer_id", "worker_id", "booking_id", "payment_intent_id", "idempotency_key",
    "amount", "platform_fee", "worker_amount", "tip", "error_reason",
    "created_at", "updated_at", "completed_at",
)


def _aware(value: datetime | None) -> datetime | None:
    # sqlite hands back naive datetimes; everything stored is UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _plain(value):
    return value.value if hasattr(value, "value") else value


def _to_booking(row: models.Booking) -> Booking:
    data = {f: getattr(row, f) for f in _BOOKING_FIELDS}
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = _aware(value)
    return Booking(
        id=row.booking_id,
        status=BookingStatus(row.status),
        status_version=row.status_version,
        payment_status=PaymentStatus(row.payment_status),
        **data,
    )


def _to_update(row: models.StatusUpdate) -> StatusUpdate:
    return StatusUpdate(
        id=row.update_id,
        booking_id=row.booking_id,
        previous_status=BookingStatus(row.previous_status),
        new_status=BookingStatus(row.new_status),
        updated_by=row.updated_by,
        actor_role=ActorRole(row.actor_role),
        timestamp=_aware(row.timestamp),
        notes=row.notes,
        metadata=dict(row.details or {}),
    )


def _update_row(update: StatusUpdate) -> models.StatusUpdate:
    return models.StatusUpdate(
        update_id=update.id,
        booking_id=update.booking_id,
        previous_status=update.previous_status.value,
        new_status=update.new_status.value,
        updated_by=update.updated_by,
        actor_role=update.actor_role.value,
        timestamp=update.timestamp,
        notes=update.notes,
        details=update.metadata,
    )


def _to_transaction(row: models.PaymentBookingTransaction) -> Transaction:
    data = {f: getattr(row, f) for f in _TX_FIELDS}
    for key in ("created_at", "updated_at", "completed_at"):
        data[key] = _aware(data[key])
    return Transaction(id=row.transaction_id, status=TransactionStatus(row.status), **data)


def _to_payout(row: models.Payout) -> Payout:
    return Payout(
        id=row.payout_id,
        booking_id=row.booking_id,
        worker_id=row.worker_id,
        amount=row.amount,
        status=PayoutStatus(row.status),
        transfer_id=row.transfer_id,
        error_message=row.error_message,
        created_at=_aware(row.created_at),
        processed_at=_aware(row.processed_at),
    )


class SqlBookingStore:
    def __init__(self, session_factory):
        self.sessions = session_factory

    @asynccontextmanager
    async def _tx(self):
        try:
            async with self.sessions() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            raise PersistenceError(f"store operation failed: {e}") from e

    async def _booking_row(self, session, booking_id: str) -> models.Booking | None:
        res = await session.execute(
            select(models.Booking)
            .where(models.Booking.booking_id == booking_id)
            .execution_options(populate_existing=True)
        )
        return res.scalar_one_or_none()

    # -------- bookings --------

    async def get_booking(self, booking_id):
        async with self._tx() as session:
            row = await self._booking_row(session, booking_id)
            return _to_booking(row) if row else None

    async def insert_booking(self, booking):
        row = models.Booking(
            booking_id=booking.id,
            status=booking.status.value,
            status_version=booking.status_version,
            payment_status=booking.payment_status.value,
            **{f: getattr(booking, f) for f in _BOOKING_FIELDS},
        )
        async with self._tx() as session:
            session.add(row)
        return booking.copy()

    async def delete_booking(self, booking_id):
        async with self._tx() as session:
            row = await self._booking_row(session, booking_id)
            if row is not None:
                await session.delete(row)

    async def transition_booking(self, booking_id, expected_status, expected_version, update_row, fields):
        values = {k: _plain(v) for k, v in fields.items()}
        async with self._tx() as session:
            res = await session.execute(
                update(models.Booking)
                .where(
                    models.Booking.booking_id == booking_id,
                    models.Booking.status == expected_status.value,
                    models.Booking.status_version == expected_version,
                )
                .values(
                    status=update_row.new_status.value,
                    status_version=models.Booking.status_version + 1,
                    updated_at=update_row.timestamp,
                    **values,
                )
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                row = await self._booking_row(session, booking_id)
                if row is None:
                    raise BookingNotFound(booking_id)
                raise ConflictError(
                    f"Booking {booking_id} is {row.status} (v{row.status_version}), "
                    f"expected {expected_status.value} (v{expected_version})"
                )
            session.add(_update_row(update_row))
            await session.flush()
            return _to_booking(await self._booking_row(session, booking_id))

    async def claim_booking(self, booking_id, worker_id, update_row):
        async with self._tx() as session:
            res = await session.execute(
                update(models.Booking)
                .where(
                    models.Booking.booking_id == booking_id,
                    models.Booking.worker_id.is_(None),
                    models.Booking.status == BookingStatus.REQUESTED.value,
                    models.Booking.payment_status == PaymentStatus.SUCCEEDED.value,
                )
                .values(
                    worker_id=worker_id,
                    status=BookingStatus.CONFIRMED.value,
                    status_version=models.Booking.status_version + 1,
                    updated_at=update_row.timestamp,
                )
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                if await self._booking_row(session, booking_id) is None:
                    raise BookingNotFound(booking_id)
                return None
            session.add(_update_row(update_row))
            await session.flush()
            return _to_booking(await self._booking_row(session, booking_id))

    async def set_payment_status(self, booking_id, payment_status, expected=None):
        conditions = [models.Booking.booking_id == booking_id]
        if expected is not None:
            conditions.append(models.Booking.payment_status == expected.value)

        async with self._tx() as session:
            res = await session.execute(
                update(models.Booking)
                .where(*conditions)
                .values(payment_status=payment_status.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            row = await self._booking_row(session, booking_id)
            if row is None:
                raise BookingNotFound(booking_id)
            if res.rowcount != 1:
                raise ConflictError(
                    f"Booking {booking_id} payment is {row.payment_status}, expected {_plain(expected)}"
                )
            return _to_booking(row)

    async def has_overlapping_booking(self, worker_id, start, end, statuses):
        async with self._tx() as session:
            res = await session.execute(
                select(models.Booking).where(
                    models.Booking.worker_id == worker_id,
                    models.Booking.status.in_([s.value for s in statuses]),
                    models.Booking.scheduled_start < end,
                )
            )
            return any(_to_booking(row).scheduled_end > start for row in res.scalars())

    async def list_status_updates(self, booking_id):
        async with self._tx() as session:
            res = await session.execute(
                select(models.StatusUpdate)
                .where(models.StatusUpdate.booking_id == booking_id)
                .order_by(models.StatusUpdate.timestamp, models.StatusUpdate.id)
            )
            return [_to_update(row) for row in res.scalars()]

    async def count_bookings_created(self, since):
        async with self._tx() as session:
            res = await session.execute(
                select(func.count()).select_from(models.Booking).where(models.Booking.created_at >= since)
            )
            return res.scalar_one()

    async def count_status_entries(self, status, since):
        async with self._tx() as session:
            res = await session.execute(
                select(func.count())
                .select_from(models.StatusUpdate)
                .where(models.StatusUpdate.new_status == status.value, models.StatusUpdate.timestamp >= since)
            )
            return res.scalar_one()

    # -------- saga ledger --------

    async def _tx_row(self, session, transaction_id):
        res = await session.execute(
            select(models.PaymentBookingTransaction)
            .where(models.PaymentBookingTransaction.transaction_id == transaction_id)
            .execution_options(populate_existing=True)
        )
        return res.scalar_one_or_none()

    async def insert_transaction(self, transaction):
        row = models.PaymentBookingTransaction(
            transaction_id=transaction.id,
            status=transaction.status.value,
            **{f: getattr(transaction, f) for f in _TX_FIELDS},
        )
        try:
            async with self._tx() as session:
                session.add(row)
        except PersistenceError as e:
            if isinstance(e.__cause__, IntegrityError) and transaction.idempotency_key:
                raise ConflictError(f"Idempotency key {transaction.idempotency_key} already used") from e
            raise
        return transaction.copy()

    async def get_transaction(self, transaction_id):
        async with self._tx() as session:
            row = await self._tx_row(session, transaction_id)
            return _to_transaction(row) if row else None

    async def find_transaction_by_key(self, idempotency_key):
        async with self._tx() as session:
            res = await session.execute(
                select(models.PaymentBookingTransaction)
                .where(models.PaymentBookingTransaction.idempotency_key == idempotency_key)
            )
            row = res.scalar_one_or_none()
            return _to_transaction(row) if row else None

    async def update_transaction(self, transaction_id, expected_status, **changes):
        values = {k: _plain(v) for k, v in changes.items()}
        values["updated_at"] = utcnow()
        async with self._tx() as session:
            res = await session.execute(
                update(models.PaymentBookingTransaction)
                .where(
                    models.PaymentBookingTransaction.transaction_id == transaction_id,
                    models.PaymentBookingTransaction.status == expected_status.value,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            row = await self._tx_row(session, transaction_id)
            if row is None:
                raise TransactionNotFound(transaction_id)
            if res.rowcount != 1:
                raise ConflictError(
                    f"Transaction {transaction_id} is {row.status}, expected {expected_status.value}"
                )
            return _to_transaction(row)

    async def list_stale_transactions(self, older_than, limit=100):
        async with self._tx() as session:
            res = await session.execute(
                select(models.PaymentBookingTransaction)
                .where(
                    models.PaymentBookingTransaction.status.in_(
                        [TransactionStatus.PENDING.value, TransactionStatus.PROCESSING.value]
                    ),
                    models.PaymentBookingTransaction.created_at < older_than,
                )
                .order_by(models.PaymentBookingTransaction.created_at)
                .limit(limit)
            )
            return [_to_transaction(row) for row in res.scalars()]

    # -------- directory --------

    async def get_user(self, user_id):
        async with self._tx() as session:
            res = await session.execute(select(models.User).where(models.User.user_id == user_id))
            row = res.scalar_one_or_none()
            if row is None:
                return None
            return UserAccount(id=row.user_id, role=ActorRole(row.role), is_active=row.is_active)

    async def get_worker_profile(self, worker_id):
        async with self._tx() as session:
            res = await session.execute(
                select(models.WorkerProfile).where(models.WorkerProfile.user_id == worker_id)
            )
            row = res.scalar_one_or_none()
            if row is None:
                return None
            return WorkerProfile(
                user_id=row.user_id,
                background_check_status=row.background_check_status,
                payout_onboarding_complete=row.payout_onboarding_complete,
                payout_destination=row.payout_destination,
                no_show_count=row.no_show_count,
                reliability_score=row.reliability_score,
            )

    async def get_address(self, address_id):
        async with self._tx() as session:
            res = await session.execute(select(models.Address).where(models.Address.address_id == address_id))
            row = res.scalar_one_or_none()
            return Address(id=row.address_id, user_id=row.user_id) if row else None

    async def record_no_show(self, worker_id):
        score = models.WorkerProfile.reliability_score - 20
        async with self._tx() as session:
            await session.execute(
                update(models.WorkerProfile)
                .where(models.WorkerProfile.user_id == worker_id)
                .values(
                    no_show_count=models.WorkerProfile.no_show_count + 1,
                    reliability_score=func.max(score, 0) if self._is_sqlite(session) else func.greatest(score, 0),
                )
                .execution_options(synchronize_session=False)
            )

    def _is_sqlite(self, session) -> bool:
        return session.get_bind().dialect.name == "sqlite"

    # -------- payouts --------

    async def insert_payout(self, payout):
        row = models.Payout(
            payout_id=payout.id,
            booking_id=payout.booking_id,
            worker_id=payout.worker_id,
            amount=payout.amount,
            status=payout.status.value,
            created_at=payout.created_at,
        )
        try:
            async with self._tx() as session:
                session.add(row)
        except PersistenceError as e:
            if isinstance(e.__cause__, IntegrityError):
                return False
            raise
        return True

    async def update_payout(self, payout_id, **changes):
        values = {k: _plain(v) for k, v in changes.items()}
        async with self._tx() as session:
            await session.execute(
                update(models.Payout)
                .where(models.Payout.payout_id == payout_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            res = await session.execute(
                select(models.Payout)
                .where(models.Payout.payout_id == payout_id)
                .execution_options(populate_existing=True)
            )
            return _to_payout(res.scalar_one())

    async def get_payout_for_booking(self, booking_id):
        async with self._tx() as session:
            res = await session.execute(select(models.Payout).where(models.Payout.booking_id == booking_id))
            row = res.scalar_one_or_none()
            return _to_payout(row) if row else None

    # -------- seeding --------

    async def add_user(self, user: UserAccount):
        async with self._tx() as session:
            session.add(models.User(user_id=user.id, role=user.role.value, is_active=user.is_active))
        return user

    async def add_worker_profile(self, profile: WorkerProfile):
        async with self._tx() as session:
            session.add(
                models.WorkerProfile(
                    user_id=profile.user_id,
                    background_check_status=profile.background_check_status,
                    payout_onboarding_complete=profile.payout_onboarding_complete,
                    payout_destination=profile.payout_destination,
                    no_show_count=profile.no_show_count,
                    reliability_score=profile.reliability_score,
                )
            )
        return profile

    async def add_address(self, address: Address):
        async with self._tx() as session:
            session.add(models.Address(address_id=address.id, user_id=address.user_id))
        return address
