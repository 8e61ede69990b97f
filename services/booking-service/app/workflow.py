"""
Booking state machine.

Every transition is one conditional write (status + version) that also
appends the StatusUpdate row. Side effects, the next watchdog and
notifications run only after that write returned.
"""
import asyncio
import logging
from dataclasses import dataclass

from .domain import (
    SYSTEM,
    Actor,
    Booking,
    BookingStatus as S,
    ScheduledTask,
    StatusUpdate,
    TaskKind,
    coerce_status,
    new_id,
    utcnow,
)
from .errors import BookingNotFound, ConflictError, TimeoutFired, ValidationError
from .policy import ADMIN, CUSTOMER, WORKER, RefundDecision, WorkflowPolicy
from .ports import BookingStore, NotificationDispatcher, TaskScheduler

logger = logging.getLogger(__name__)

STATUS_MESSAGES = {
    S.REQUESTED: "A new job is waiting for you",
    S.CONFIRMED: "Your booking has been confirmed",
    S.ASSIGNED: "A worker has been assigned to your job",
    S.EN_ROUTE: "Your worker is on the way",
    S.ARRIVED: "Your worker has arrived",
    S.IN_PROGRESS: "Your service is in progress",
    S.COMPLETED: "Service completed. Please rate your experience",
    S.PAID: "Payment processed",
    S.REVIEWED: "A review was left for this job",
    S.CANCELLED: "This booking has been cancelled",
    S.NO_SHOW: "A no-show was reported for this booking",
    S.DISPUTED: "This booking needs resolution",
}


@dataclass(frozen=True)
class TransitionResult:
    booking: Booking
    update: StatusUpdate


class WorkflowEngine:
    def __init__(
        self,
        store: BookingStore,
        policy: WorkflowPolicy,
        scheduler: TaskScheduler,
        dispatcher: NotificationDispatcher,
        effects,
        alerts,
        admin_target: str | None = None,
        clock=utcnow,
    ):
        self.store = store
        self.policy = policy
        self.scheduler = scheduler
        self.dispatcher = dispatcher
        self.effects = effects
        self.alerts = alerts
        self.admin_target = admin_target
        self.clock = clock
        self._deliveries: set[asyncio.Task] = set()

    # -------- transitions --------

    async def apply_transition(
        self,
        booking_id: str,
        target,
        actor: Actor,
        notes: str | None = None,
        metadata: dict | None = None,
        expected_status: S | None = None,
        expected_version: int | None = None,
    ) -> TransitionResult:
        try:
            target = coerce_status(target)
        except ValueError:
            raise ValidationError(f"Unknown booking status: {target!r}")

        booking = await self.store.get_booking(booking_id)
        if booking is None:
            raise BookingNotFound(booking_id)

        if expected_status is not None and booking.status != expected_status:
            raise ConflictError(
                f"Booking {booking_id} moved to {booking.status.value} (expected {expected_status.value})"
            )
        if expected_version is not None and booking.status_version != expected_version:
            raise ConflictError(f"Booking {booking_id} changed since version {expected_version}")

        if not self.policy.allows(booking.status, target):
            raise ValidationError(f"Invalid transition from {booking.status.value} to {target.value}")

        now = self.clock()
        metadata = dict(metadata or {})
        fields = self._entry_fields(booking, target, actor, notes, metadata, now)

        update = StatusUpdate(
            id=new_id(),
            booking_id=booking.id,
            previous_status=booking.status,
            new_status=target,
            updated_by=actor.label,
            actor_role=actor.role,
            timestamp=now,
            notes=notes,
            metadata=metadata,
        )

        updated = await self.store.transition_booking(
            booking.id, booking.status, booking.status_version, update, fields
        )
        logger.info(
            "booking %s %s -> %s by %s",
            booking.id, update.previous_status.value, target.value, actor.label,
        )

        await self.after_commit(updated, update)
        return TransitionResult(booking=updated, update=update)

    def _entry_fields(self, booking: Booking, target: S, actor: Actor, notes, metadata: dict, now) -> dict:
        """Columns written together with the status. May add audit keys to ``metadata``."""
        if target == S.EN_ROUTE:
            return {"en_route_at": now}
        if target == S.ARRIVED:
            return {"arrived_at": now}
        if target == S.IN_PROGRESS:
            return {"actual_start": now}
        if target == S.COMPLETED and booking.actual_end is None:
            return {"actual_end": now}
        if target != S.CANCELLED:
            return {}

        decision = RefundDecision.from_metadata(metadata)
        if decision is None:
            hours = (booking.scheduled_start - now).total_seconds() / 3600
            decision = self.policy.refunds.evaluate(booking.status, actor.role, hours, booking.total)
            metadata.update(decision.as_metadata())

        if booking.worker_id:
            metadata["released_worker_id"] = booking.worker_id

        return {
            "worker_id": None,
            "cancelled_by": actor.label,
            "cancellation_reason": notes,
            "refund_amount": decision.refund_amount,
        }

    async def enter_initial_state(self, booking: Booking) -> None:
        """Post-commit path for a booking that was just created in ``requested``."""
        await self._after_commit_step("watchdog", booking, self._schedule_watchdog(booking))
        self._notify(booking, booking.status, self._recipients(booking, booking.status, {}), {})

    async def after_commit(self, booking: Booking, update: StatusUpdate) -> None:
        recipients = self._recipients(booking, update.new_status, update.metadata)
        self._notify(booking, update.new_status, recipients, {"previous_status": update.previous_status.value})

        await self._after_commit_step("side_effect", booking, self.effects.on_enter(booking, update))
        await self._after_commit_step("watchdog", booking, self._schedule_watchdog(booking))

    async def _after_commit_step(self, step: str, booking: Booking, coro) -> None:
        # the transition already committed; a failing step is an ops problem, not the caller's
        try:
            await coro
        except Exception as e:
            logger.exception("%s failed for booking %s in %s", step, booking.id, booking.status.value)
            await self.alerts.raise_alert(
                f"{step}_failed",
                f"{step} failed after booking entered {booking.status.value}",
                booking_id=booking.id,
                error=e,
            )

    # -------- watchdogs --------

    async def _schedule_watchdog(self, booking: Booking) -> None:
        dwell = self.policy.dwell_time(booking.status)
        if dwell is None:
            return
        task = ScheduledTask(
            id=new_id(),
            kind=TaskKind.TIMEOUT,
            booking_id=booking.id,
            due_at=self.clock() + dwell,
            expected_status=booking.status,
            status_version=booking.status_version,
        )
        await self.scheduler.schedule(task)

    async def handle_timeout(self, signal: TimeoutFired) -> TransitionResult | None:
        booking = await self.store.get_booking(signal.booking_id)
        if booking is None:
            logger.warning("watchdog for missing booking %s", signal.booking_id)
            return None

        if booking.status != signal.status or (
            signal.status_version is not None and booking.status_version != signal.status_version
        ):
            logger.info(
                "watchdog no-op for %s: now %s v%s, armed for %s v%s",
                booking.id, booking.status.value, booking.status_version,
                signal.status.value, signal.status_version,
            )
            return None

        fallback = self.policy.fallback(booking.status)
        if fallback is None:
            logger.warning("booking %s exceeded dwell time in %s", booking.id, booking.status.value)
            return None

        dwell = self.policy.dwell_time(booking.status)
        try:
            return await self.apply_transition(
                booking.id,
                fallback,
                SYSTEM,
                notes=f"No progress within {int(dwell.total_seconds() // 60)} minutes",
                metadata={"trigger": "timeout"},
                expected_status=signal.status,
                expected_version=booking.status_version,
            )
        except ConflictError:
            logger.info("watchdog for %s lost to a concurrent transition; already handled", booking.id)
            return None

    # -------- notifications --------

    def _recipients(self, booking: Booking, status: S, metadata: dict) -> list[str]:
        targets = []
        for role in self.policy.recipients_for(status):
            if role == CUSTOMER:
                target = booking.customer_id
            elif role == WORKER:
                target = booking.worker_id or metadata.get("released_worker_id")
            elif role == ADMIN:
                target = self.admin_target
            else:
                target = None
            if target and target not in targets:
                targets.append(target)
        return targets

    def _notify(self, booking: Booking, status: S, targets: list[str], extra: dict) -> None:
        payload = {
            "booking_id": booking.id,
            "status": status.value,
            "title": f"Job {status.value.replace('_', ' ')}",
            "body": STATUS_MESSAGES.get(status, "Booking status updated"),
            **extra,
        }
        for target in targets:
            task = asyncio.create_task(self._deliver(target, f"booking.{status.value}", payload))
            self._deliveries.add(task)
            task.add_done_callback(self._deliveries.discard)

    async def _deliver(self, target: str, event_type: str, payload: dict) -> None:
        try:
            await self.dispatcher.send(target, event_type, payload)
        except Exception:
            logger.warning("notification %s to %s failed", event_type, target, exc_info=True)

    async def drain(self) -> None:
        """Wait for in-flight notification deliveries."""
        while self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)
