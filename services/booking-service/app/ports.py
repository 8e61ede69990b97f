"""
Boundaries the orchestrator talks through.

Adapters live in ``app.adapters``: SQLAlchemy / Redis / RabbitMQ / httpx for
production and in-memory fakes for tests.
"""
from datetime import datetime
from typing import Protocol, runtime_checkable

from .domain import (
    Address,
    Booking,
    BookingStatus,
    Payout,
    PaymentStatus,
    ScheduledTask,
    StatusUpdate,
    Transaction,
    TransactionStatus,
    UserAccount,
    WorkerProfile,
)


@runtime_checkable
class BookingStore(Protocol):
    # -------- bookings --------

    async def get_booking(self, booking_id: str) -> Booking | None: ...

    async def insert_booking(self, booking: Booking) -> Booking: ...

    async def delete_booking(self, booking_id: str) -> None: ...

    async def transition_booking(
        self,
        booking_id: str,
        expected_status: BookingStatus,
        expected_version: int,
        update: StatusUpdate,
        fields: dict,
    ) -> Booking:
        """
        Set ``status = update.new_status`` (plus ``fields``) only if the row is
        still in ``expected_status`` at ``expected_version``, bump the version
        and append ``update`` to the ledger in the same store transaction.
        Raises ConflictError when the precondition no longer holds.
        """
        ...

    async def claim_booking(self, booking_id: str, worker_id: str, update: StatusUpdate) -> Booking | None:
        """Assign ``worker_id`` and confirm only if unassigned and requested. None when lost."""
        ...

    async def set_payment_status(
        self, booking_id: str, payment_status: PaymentStatus, expected: PaymentStatus | None = None
    ) -> Booking:
        """Conditional on ``expected`` when given; raises ConflictError otherwise."""
        ...

    async def has_overlapping_booking(
        self, worker_id: str, start: datetime, end: datetime, statuses: frozenset
    ) -> bool: ...

    async def list_status_updates(self, booking_id: str) -> list[StatusUpdate]: ...

    async def count_bookings_created(self, since: datetime) -> int: ...

    async def count_status_entries(self, status: BookingStatus, since: datetime) -> int: ...

    # -------- saga ledger --------

    async def insert_transaction(self, transaction: Transaction) -> Transaction: ...

    async def get_transaction(self, transaction_id: str) -> Transaction | None: ...

    async def find_transaction_by_key(self, idempotency_key: str) -> Transaction | None: ...

    async def update_transaction(
        self, transaction_id: str, expected_status: TransactionStatus, **changes
    ) -> Transaction:
        """Conditional on the current status; raises ConflictError otherwise."""
        ...

    async def list_stale_transactions(self, older_than: datetime, limit: int = 100) -> list[Transaction]: ...

    # -------- directory --------

    async def get_user(self, user_id: str) -> UserAccount | None: ...

    async def get_worker_profile(self, worker_id: str) -> WorkerProfile | None: ...

    async def get_address(self, address_id: str) -> Address | None: ...

    async def record_no_show(self, worker_id: str) -> None: ...

    # -------- payouts --------

    async def insert_payout(self, payout: Payout) -> bool:
        """Insert-if-absent keyed on booking id. False when one already exists."""
        ...

    async def update_payout(self, payout_id: str, **changes) -> Payout: ...

    async def get_payout_for_booking(self, booking_id: str) -> Payout | None: ...


@runtime_checkable
class PaymentGateway(Protocol):
    async def create_hold(self, amount: int, platform_fee_amount: int, payout_destination: str | None,
                          metadata: dict | None = None) -> str: ...

    async def confirm(self, intent_id: str) -> None: ...

    async def cancel(self, intent_id: str) -> None: ...

    async def capture(self, intent_id: str, amount: int | None = None) -> None: ...

    async def refund(self, intent_id: str, amount: int, reason: str) -> str: ...

    async def transfer(self, destination: str, amount: int, metadata: dict | None = None) -> str: ...


@runtime_checkable
class NotificationDispatcher(Protocol):
    async def send(self, target_user_id: str, event_type: str, payload: dict) -> None: ...


@runtime_checkable
class TaskScheduler(Protocol):
    async def schedule(self, task: ScheduledTask) -> None: ...

    async def due(self, now: datetime, limit: int = 50) -> list[ScheduledTask]: ...

    async def claim(self, task_id: str) -> bool:
        """Atomically remove a due task; exactly one caller gets True."""
        ...


@runtime_checkable
class LocationTracker(Protocol):
    async def start(self, booking_id: str, worker_id: str | None) -> None: ...

    async def stop(self, booking_id: str) -> None: ...
