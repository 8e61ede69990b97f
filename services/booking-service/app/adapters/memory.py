"""
In-memory adapters for every port.

Each coroutine yields to the event loop once before touching state and then
performs its check-and-set without awaiting, so a conditional write here is
as indivisible as the ``UPDATE ... WHERE`` it stands in for. Failure
injection (``fail`` / ``heal``) lets tests break a specific primitive.
"""
import asyncio
import uuid
from collections import Counter
from datetime import datetime

from ..domain import (
    Address,
    Booking,
    BookingStatus,
    PaymentStatus,
    Payout,
    ScheduledTask,
    StatusUpdate,
    Transaction,
    TransactionStatus,
    UserAccount,
    WorkerProfile,
    utcnow,
)
from ..errors import BookingNotFound, ConflictError, ExternalServiceError, PersistenceError, TransactionNotFound


def _token(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


class _FailureInjection:
    def __init__(self):
        self.fail_on: dict[str, Exception] = {}

    def fail(self, operation: str, error: Exception | None = None):
        self.fail_on[operation] = error or self._default_error(operation)

    def heal(self, operation: str | None = None):
        if operation is None:
            self.fail_on.clear()
        else:
            self.fail_on.pop(operation, None)

    def _default_error(self, operation: str) -> Exception:
        return RuntimeError(f"{operation} failed")

    async def _enter(self, operation: str):
        await asyncio.sleep(0)
        error = self.fail_on.get(operation)
        if error is not None:
            raise error


class InMemoryStore(_FailureInjection):
    def __init__(self):
        super().__init__()
        self.bookings: dict[str, Booking] = {}
        self.status_updates: list[StatusUpdate] = []
        self.transactions: dict[str, Transaction] = {}
        self.users: dict[str, UserAccount] = {}
        self.workers: dict[str, WorkerProfile] = {}
        self.addresses: dict[str, Address] = {}
        self.payouts: dict[str, Payout] = {}

    def _default_error(self, operation: str) -> Exception:
        return PersistenceError(f"{operation} failed")

    # -------- seeding --------

    def add_user(self, user: UserAccount) -> UserAccount:
        self.users[user.id] = user
        return user

    def add_worker_profile(self, profile: WorkerProfile) -> WorkerProfile:
        self.workers[profile.user_id] = profile
        return profile

    def add_address(self, address: Address) -> Address:
        self.addresses[address.id] = address
        return address

    # -------- bookings --------

    async def get_booking(self, booking_id):
        await self._enter("get_booking")
        booking = self.bookings.get(booking_id)
        return booking.copy() if booking else None

    async def insert_booking(self, booking):
        await self._enter("insert_booking")
        if booking.id in self.bookings:
            raise PersistenceError(f"Booking {booking.id} already exists")
        self.bookings[booking.id] = booking.copy()
        return booking.copy()

    async def delete_booking(self, booking_id):
        await self._enter("delete_booking")
        self.bookings.pop(booking_id, None)

    async def transition_booking(self, booking_id, expected_status, expected_version, update, fields):
        await self._enter("transition_booking")
        booking = self.bookings.get(booking_id)
        if booking is None:
            raise BookingNotFound(booking_id)
        if booking.status != expected_status or booking.status_version != expected_version:
            raise ConflictError(
                f"Booking {booking_id} is {booking.status.value} (v{booking.status_version}), "
                f"expected {expected_status.value} (v{expected_version})"
            )

        updated = booking.copy(
            status=update.new_status,
            status_version=booking.status_version + 1,
            updated_at=update.timestamp,
            **fields,
        )
        self.bookings[booking_id] = updated
        self.status_updates.append(update)
        return updated.copy()

    async def claim_booking(self, booking_id, worker_id, update):
        await self._enter("claim_booking")
        booking = self.bookings.get(booking_id)
        if booking is None:
            raise BookingNotFound(booking_id)
        if (
            booking.worker_id is not None
            or booking.status != BookingStatus.REQUESTED
            or booking.payment_status != PaymentStatus.SUCCEEDED
        ):
            return None

        updated = booking.copy(
            worker_id=worker_id,
            status=BookingStatus.CONFIRMED,
            status_version=booking.status_version + 1,
            updated_at=update.timestamp,
        )
        self.bookings[booking_id] = updated
        self.status_updates.append(update)
        return updated.copy()

    async def set_payment_status(self, booking_id, payment_status, expected=None):
        await self._enter("set_payment_status")
        booking = self.bookings.get(booking_id)
        if booking is None:
            raise BookingNotFound(booking_id)
        if expected is not None and booking.payment_status != expected:
            raise ConflictError(
                f"Booking {booking_id} payment is {booking.payment_status.value}, expected {expected.value}"
            )
        updated = booking.copy(payment_status=payment_status, updated_at=utcnow())
        self.bookings[booking_id] = updated
        return updated.copy()

    async def has_overlapping_booking(self, worker_id, start, end, statuses):
        await self._enter("has_overlapping_booking")
        for booking in self.bookings.values():
            if booking.worker_id != worker_id or booking.status not in statuses:
                continue
            if booking.scheduled_start < end and booking.scheduled_end > start:
                return True
        return False

    async def list_status_updates(self, booking_id):
        await self._enter("list_status_updates")
        rows = [u for u in self.status_updates if u.booking_id == booking_id]
        return sorted(rows, key=lambda u: u.timestamp)

    async def count_bookings_created(self, since: datetime) -> int:
        await self._enter("count_bookings_created")
        return sum(1 for b in self.bookings.values() if b.created_at >= since)

    async def count_status_entries(self, status, since: datetime) -> int:
        await self._enter("count_status_entries")
        return sum(1 for u in self.status_updates if u.new_status == status and u.timestamp >= since)

    # -------- saga ledger --------

    async def insert_transaction(self, transaction):
        await self._enter("insert_transaction")
        if transaction.idempotency_key:
            for existing in self.transactions.values():
                if existing.idempotency_key == transaction.idempotency_key:
                    raise ConflictError(f"Idempotency key {transaction.idempotency_key} already used")
        self.transactions[transaction.id] = transaction.copy()
        return transaction.copy()

    async def get_transaction(self, transaction_id):
        await self._enter("get_transaction")
        tx = self.transactions.get(transaction_id)
        return tx.copy() if tx else None

    async def find_transaction_by_key(self, idempotency_key):
        await self._enter("find_transaction_by_key")
        for tx in self.transactions.values():
            if tx.idempotency_key == idempotency_key:
                return tx.copy()
        return None

    async def update_transaction(self, transaction_id, expected_status, **changes):
        await self._enter("update_transaction")
        tx = self.transactions.get(transaction_id)
        if tx is None:
            raise TransactionNotFound(transaction_id)
        if tx.status != expected_status:
            raise ConflictError(
                f"Transaction {transaction_id} is {tx.status.value}, expected {expected_status.value}"
            )
        updated = tx.copy(updated_at=utcnow(), **changes)
        self.transactions[transaction_id] = updated
        return updated.copy()

    async def list_stale_transactions(self, older_than, limit=100):
        await self._enter("list_stale_transactions")
        open_states = (TransactionStatus.PENDING, TransactionStatus.PROCESSING)
        stale = [t for t in self.transactions.values() if t.status in open_states and t.created_at < older_than]
        stale.sort(key=lambda t: t.created_at)
        return [t.copy() for t in stale[:limit]]

    # -------- directory --------

    async def get_user(self, user_id):
        await self._enter("get_user")
        return self.users.get(user_id)

    async def get_worker_profile(self, worker_id):
        await self._enter("get_worker_profile")
        return self.workers.get(worker_id)

    async def get_address(self, address_id):
        await self._enter("get_address")
        return self.addresses.get(address_id)

    async def record_no_show(self, worker_id):
        await self._enter("record_no_show")
        profile = self.workers.get(worker_id)
        if profile is None:
            return
        self.workers[worker_id] = WorkerProfile(
            user_id=profile.user_id,
            background_check_status=profile.background_check_status,
            payout_onboarding_complete=profile.payout_onboarding_complete,
            payout_destination=profile.payout_destination,
            no_show_count=profile.no_show_count + 1,
            reliability_score=max(0, profile.reliability_score - 20),
        )

    # -------- payouts --------

    async def insert_payout(self, payout):
        await self._enter("insert_payout")
        if any(p.booking_id == payout.booking_id for p in self.payouts.values()):
            return False
        self.payouts[payout.id] = payout
        return True

    async def update_payout(self, payout_id, **changes):
        await self._enter("update_payout")
        payout = self.payouts[payout_id]
        for key, value in changes.items():
            setattr(payout, key, value)
        return payout

    async def get_payout_for_booking(self, booking_id):
        await self._enter("get_payout_for_booking")
        for payout in self.payouts.values():
            if payout.booking_id == booking_id:
                return payout
        return None


class InMemoryPaymentGateway(_FailureInjection):
    """Records every call so tests can count holds, cancels, refunds and transfers."""

    def __init__(self):
        super().__init__()
        self.calls: list[tuple] = []
        self.counts: Counter = Counter()
        self.intents: dict[str, dict] = {}
        self.transfers: dict[str, dict] = {}

    def _default_error(self, operation: str) -> Exception:
        return ExternalServiceError(f"{operation} declined")

    def _record(self, operation: str, *args):
        self.calls.append((operation, *args))
        self.counts[operation] += 1

    def _intent(self, intent_id: str) -> dict:
        intent = self.intents.get(intent_id)
        if intent is None:
            raise ExternalServiceError(f"No such payment intent: {intent_id}", status_code=404)
        return intent

    async def create_hold(self, amount, platform_fee_amount, payout_destination, metadata=None):
        self._record("create_hold", amount, platform_fee_amount, payout_destination)
        await self._enter("create_hold")
        intent_id = _token("pi")
        self.intents[intent_id] = {
            "amount": amount,
            "platform_fee_amount": platform_fee_amount,
            "destination": payout_destination,
            "status": "requires_confirmation",
            "captured": 0,
            "refunded": 0,
            "metadata": dict(metadata or {}),
        }
        return intent_id

    async def confirm(self, intent_id):
        self._record("confirm", intent_id)
        await self._enter("confirm")
        self._intent(intent_id)["status"] = "requires_capture"

    async def cancel(self, intent_id):
        self._record("cancel", intent_id)
        await self._enter("cancel")
        self._intent(intent_id)["status"] = "canceled"

    async def capture(self, intent_id, amount=None):
        self._record("capture", intent_id, amount)
        await self._enter("capture")
        intent = self._intent(intent_id)
        intent["captured"] = intent["amount"] if amount is None else amount
        intent["status"] = "succeeded"

    async def refund(self, intent_id, amount, reason):
        self._record("refund", intent_id, amount, reason)
        await self._enter("refund")
        intent = self._intent(intent_id)
        if intent["refunded"] + amount > intent["captured"]:
            raise ExternalServiceError(f"Refund of {amount} exceeds captured funds on {intent_id}")
        intent["refunded"] += amount
        return _token("re")

    async def transfer(self, destination, amount, metadata=None):
        self._record("transfer", destination, amount)
        await self._enter("transfer")
        transfer_id = _token("tr")
        self.transfers[transfer_id] = {"destination": destination, "amount": amount, "metadata": dict(metadata or {})}
        return transfer_id


class InMemoryDispatcher(_FailureInjection):
    def __init__(self):
        super().__init__()
        self.sent: list[tuple[str, str, dict]] = []

    def _default_error(self, operation: str) -> Exception:
        return ExternalServiceError("notification channel down", service="notifications")

    async def send(self, target_user_id, event_type, payload):
        await self._enter("send")
        self.sent.append((target_user_id, event_type, payload))

    def sent_to(self, target_user_id: str) -> list[tuple[str, str, dict]]:
        return [s for s in self.sent if s[0] == target_user_id]

    def of_type(self, event_type: str) -> list[tuple[str, str, dict]]:
        return [s for s in self.sent if s[1] == event_type]


class InMemoryScheduler(_FailureInjection):
    def __init__(self):
        super().__init__()
        self.tasks: dict[str, ScheduledTask] = {}

    async def schedule(self, task):
        await self._enter("schedule")
        self.tasks[task.id] = task

    async def due(self, now, limit=50):
        await self._enter("due")
        ready = sorted((t for t in self.tasks.values() if t.due_at <= now), key=lambda t: t.due_at)
        return ready[:limit]

    async def claim(self, task_id):
        await self._enter("claim")
        return self.tasks.pop(task_id, None) is not None

    def pending_for(self, booking_id: str) -> list[ScheduledTask]:
        return sorted((t for t in self.tasks.values() if t.booking_id == booking_id), key=lambda t: t.due_at)


class InMemoryTracker(_FailureInjection):
    def __init__(self):
        super().__init__()
        self.active: dict[str, str | None] = {}
        self.events: list[tuple[str, str]] = []

    async def start(self, booking_id, worker_id):
        await self._enter("start")
        self.active[booking_id] = worker_id
        self.events.append(("start", booking_id))

    async def stop(self, booking_id):
        await self._enter("stop")
        self.active.pop(booking_id, None)
        self.events.append(("stop", booking_id))

