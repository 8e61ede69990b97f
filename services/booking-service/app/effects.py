import logging

from .domain import Booking, BookingStatus as S, ScheduledTask, StatusUpdate, TaskKind, new_id
from .policy import RefundDecision
from .ports import BookingStore, LocationTracker, TaskScheduler

logger = logging.getLogger(__name__)


class StateEffects:
    """State-entry side effects. Only ever run after the status write committed."""

    def __init__(self, store: BookingStore, scheduler: TaskScheduler, tracker: LocationTracker, refunds, policy):
        self.store = store
        self.scheduler = scheduler
        self.tracker = tracker
        self.refunds = refunds
        self.policy = policy
        self._handlers = {
            S.EN_ROUTE: self._on_en_route,
            S.ARRIVED: self._on_arrived,
            S.COMPLETED: self._on_completed,
            S.PAID: self._on_paid,
            S.CANCELLED: self._on_cancelled,
            S.NO_SHOW: self._on_no_show,
        }

    async def on_enter(self, booking: Booking, update: StatusUpdate) -> None:
        handler = self._handlers.get(update.new_status)
        if handler is not None:
            await handler(booking, update)

    async def _on_en_route(self, booking, update):
        await self.tracker.start(booking.id, booking.worker_id)

    async def _on_arrived(self, booking, update):
        await self.tracker.stop(booking.id)

    async def _on_completed(self, booking, update):
        await self._schedule(TaskKind.SETTLE, booking, update.timestamp + self.policy.settle_delay)

    async def _on_paid(self, booking, update):
        await self._schedule(TaskKind.PAYOUT, booking, update.timestamp + self.policy.payout_delay)

    async def _on_cancelled(self, booking, update):
        if update.previous_status == S.EN_ROUTE:
            await self.tracker.stop(booking.id)

        decision = RefundDecision.from_metadata(update.metadata)
        if decision is None:
            logger.warning("cancellation of %s carries no refund decision", booking.id)
            return
        await self.refunds.execute(booking, decision, update.notes or "booking cancelled")

    async def _on_no_show(self, booking, update):
        if booking.worker_id:
            await self.store.record_no_show(booking.worker_id)

    async def _schedule(self, kind: TaskKind, booking: Booking, due_at):
        task = ScheduledTask(
            id=new_id(),
            kind=kind,
            booking_id=booking.id,
            due_at=due_at,
            expected_status=booking.status,
            status_version=booking.status_version,
        )
        await self.scheduler.schedule(task)
        logger.info("scheduled %s for booking %s at %s", kind.value, booking.id, due_at.isoformat())
