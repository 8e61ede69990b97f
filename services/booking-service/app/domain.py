import enum
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class BookingStatus(str, enum.Enum):
    REQUESTED = "requested"
    CONFIRMED = "confirmed"
    ASSIGNED = "assigned"
    EN_ROUTE = "en_route"
    ARRIVED = "arrived"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PAID = "paid"
    REVIEWED = "reviewed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    DISPUTED = "disputed"


# statuses that hold the worker's calendar
ACTIVE_STATUSES = frozenset({
    BookingStatus.REQUESTED,
    BookingStatus.CONFIRMED,
    BookingStatus.ASSIGNED,
    BookingStatus.EN_ROUTE,
    BookingStatus.ARRIVED,
    BookingStatus.IN_PROGRESS,
})

PENDING_RESOLUTION = frozenset({BookingStatus.DISPUTED, BookingStatus.NO_SHOW})


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    CAPTURED = "captured"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


UNCAPTURED = frozenset({PaymentStatus.PENDING, PaymentStatus.SUCCEEDED})


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        return self in (TransactionStatus.COMPLETED, TransactionStatus.FAILED, TransactionStatus.ROLLED_BACK)


class ActorRole(str, enum.Enum):
    CUSTOMER = "customer"
    WORKER = "worker"
    SYSTEM = "system"
    ADMIN = "admin"


class PayoutStatus(str, enum.Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskKind(str, enum.Enum):
    TIMEOUT = "timeout"
    SETTLE = "settle"
    PAYOUT = "payout"


@dataclass(frozen=True)
class Actor:
    role: ActorRole
    user_id: str | None = None

    @property
    def label(self) -> str:
        if self.role is ActorRole.SYSTEM or not self.user_id:
            return self.role.value
        return f"{self.role.value}:{self.user_id}"


SYSTEM = Actor(ActorRole.SYSTEM)


@dataclass(frozen=True)
class PaymentBreakdown:
    subtotal: int
    platform_fee: int
    worker_amount: int
    tip: int
    total: int


@dataclass
class Booking:
    id: str
    customer_id: str
    address_id: str
    scheduled_start: datetime
    duration_minutes: int
    subtotal: int
    platform_fee: int
    worker_amount: int
    tip: int
    total: int
    worker_id: str | None = None
    status: BookingStatus = BookingStatus.REQUESTED
    status_version: int = 0
    payment_intent_id: str | None = None
    payment_status: PaymentStatus = PaymentStatus.PENDING
    notes: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    en_route_at: datetime | None = None
    arrived_at: datetime | None = None
    actual_start: datetime | None = None
    actual_end: datetime | None = None
    cancelled_by: str | None = None
    cancellation_reason: str | None = None
    refund_amount: int = 0

    @property
    def scheduled_end(self) -> datetime:
        return self.scheduled_start + timedelta(minutes=self.duration_minutes)

    @property
    def breakdown(self) -> PaymentBreakdown:
        return PaymentBreakdown(
            subtotal=self.subtotal,
            platform_fee=self.platform_fee,
            worker_amount=self.worker_amount,
            tip=self.tip,
            total=self.total,
        )

    def copy(self, **changes) -> "Booking":
        return replace(self, **changes)


@dataclass(frozen=True)
class StatusUpdate:
    """One row of the append-only status ledger."""

    id: str
    booking_id: str
    previous_status: BookingStatus
    new_status: BookingStatus
    updated_by: str
    actor_role: ActorRole
    timestamp: datetime
    notes: str | None = None
    metadata: dict = field(default_factory=dict)


@dataclass
class Transaction:
    id: str
    customer_id: str
    amount: int
    platform_fee: int
    worker_amount: int
    tip: int
    worker_id: str | None = None
    status: TransactionStatus = TransactionStatus.PENDING
    payment_intent_id: str | None = None
    booking_id: str | None = None
    idempotency_key: str | None = None
    error_reason: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    def copy(self, **changes) -> "Transaction":
        return replace(self, **changes)


@dataclass(frozen=True)
class UserAccount:
    id: str
    role: ActorRole
    is_active: bool = True


@dataclass(frozen=True)
class WorkerProfile:
    user_id: str
    background_check_status: str | None = None
    payout_onboarding_complete: bool = False
    payout_destination: str | None = None
    no_show_count: int = 0
    reliability_score: int = 100


@dataclass(frozen=True)
class Address:
    id: str
    user_id: str


@dataclass
class Payout:
    id: str
    booking_id: str
    worker_id: str
    amount: int
    status: PayoutStatus = PayoutStatus.PROCESSING
    transfer_id: str | None = None
    error_message: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    processed_at: datetime | None = None


@dataclass(frozen=True)
class ScheduledTask:
    id: str
    kind: TaskKind
    booking_id: str
    due_at: datetime
    expected_status: BookingStatus | None = None
    status_version: int | None = None
    attempts: int = 0

    def retry(self, due_at: datetime) -> "ScheduledTask":
        return replace(self, id=new_id(), due_at=due_at, attempts=self.attempts + 1)


def coerce_status(value) -> BookingStatus:
    """Accepts an enum member or its string value. Raises ValueError otherwise."""
    if isinstance(value, BookingStatus):
        return value
    return BookingStatus(value)
