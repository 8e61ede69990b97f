from datetime import timedelta

from .alerts import OperatorAlerts
from .cancellation import CancellationWorkflow
from .claims import ClaimProtocol, ClaimResult
from .coordinator import BookingRequest, SagaOutcome, TransactionCoordinator
from .domain import Actor, ActorRole, Booking, BookingStatus, Transaction, coerce_status, utcnow
from .effects import StateEffects
from .errors import BookingNotFound, TransactionNotFound, ValidationError
from .history import StatusHistory
from .policy import WorkflowPolicy, load_policy
from .ports import BookingStore, LocationTracker, NotificationDispatcher, PaymentGateway, TaskScheduler
from .pricing import DEFAULT_PLATFORM_FEE_RATE
from .refunds import RefundExecutor
from .settlement import PaymentSettlement
from .sweeper import StaleTransactionSweeper
from .tasks import TaskWorker
from .workflow import TransitionResult, WorkflowEngine

# written only by the engine, claims, refunds and settlement
RESERVED_METADATA_KEYS = frozenset({"trigger", "released_worker_id", "claimed_by", "amount"})


def caller_metadata(metadata: dict | None) -> dict | None:
    if not metadata:
        return metadata
    return {
        k: v for k, v in metadata.items()
        if k not in RESERVED_METADATA_KEYS and not k.startswith("refund_")
    }


class BookingOrchestrator:
    """Caller-facing entry points, each delegating to exactly one component."""

    def __init__(
        self,
        store: BookingStore,
        gateway: PaymentGateway,
        dispatcher: NotificationDispatcher,
        scheduler: TaskScheduler,
        tracker: LocationTracker,
        policy: WorkflowPolicy | None = None,
        admin_target: str | None = None,
        platform_fee_rate=DEFAULT_PLATFORM_FEE_RATE,
        stale_after: timedelta = timedelta(minutes=30),
        poll_seconds: float = 2.0,
        clock=utcnow,
    ):
        self.store = store
        self.gateway = gateway
        self.policy = policy or load_policy()

        self.alerts = OperatorAlerts(dispatcher, admin_target)
        self.refunds = RefundExecutor(store, gateway)
        self.effects = StateEffects(store, scheduler, tracker, self.refunds, self.policy)
        self.engine = WorkflowEngine(
            store,
            self.policy,
            scheduler,
            dispatcher,
            self.effects,
            self.alerts,
            admin_target=admin_target,
            clock=clock,
        )
        self.coordinator = TransactionCoordinator(
            store, gateway, self.engine, self.alerts, platform_fee_rate=platform_fee_rate, clock=clock
        )
        self.claims = ClaimProtocol(store, self.engine, clock=clock)
        self.cancellation = CancellationWorkflow(store, self.engine, self.policy, clock=clock)
        self.settlement = PaymentSettlement(store, gateway, self.engine, self.alerts, clock=clock)
        self.history = StatusHistory(store, self.policy, clock=clock)
        self.sweeper = StaleTransactionSweeper(store, self.alerts, threshold=stale_after, clock=clock)
        self.tasks = TaskWorker(scheduler, self.engine, self.settlement, self.alerts, poll_seconds=poll_seconds, clock=clock)

    async def create_booking_with_payment(self, request: BookingRequest) -> SagaOutcome:
        return await self.coordinator.create_booking_with_payment(request)

    async def confirm_transaction(self, transaction_id: str) -> SagaOutcome:
        return await self.coordinator.confirm_transaction(transaction_id)

    async def claim_job(self, booking_id: str, worker_id: str) -> ClaimResult:
        return await self.claims.claim(booking_id, worker_id)

    async def advance_status(self, booking_id: str, target, actor: Actor, notes: str | None = None,
                             metadata: dict | None = None) -> TransitionResult:
        try:
            status = coerce_status(target)
        except ValueError:
            raise ValidationError(f"Unknown booking status: {target!r}")
        if status == BookingStatus.PAID and actor.role != ActorRole.SYSTEM:
            # only settlement marks a booking paid, after it captured the hold
            raise ValidationError("Bookings are marked paid by payment settlement")
        if status == BookingStatus.CANCELLED:
            return await self.cancellation.cancel(booking_id, actor, notes)
        return await self.engine.apply_transition(
            booking_id, status, actor, notes=notes, metadata=caller_metadata(metadata)
        )

    async def cancel_booking(self, booking_id: str, actor: Actor, reason: str | None = None,
                             refund_pct_override: int | None = None) -> TransitionResult:
        return await self.cancellation.cancel(booking_id, actor, reason, refund_pct_override)

    async def get_booking(self, booking_id: str) -> Booking:
        booking = await self.store.get_booking(booking_id)
        if booking is None:
            raise BookingNotFound(booking_id)
        return booking

    async def get_transaction(self, transaction_id: str) -> Transaction:
        tx = await self.store.get_transaction(transaction_id)
        if tx is None:
            raise TransactionNotFound(transaction_id)
        return tx

    async def timeline(self, booking_id: str):
        await self.get_booking(booking_id)
        return await self.history.timeline(booking_id)

    async def drain(self):
        await self.engine.drain()
