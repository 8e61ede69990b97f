import logging

from .domain import Actor, ActorRole, BookingStatus, utcnow
from .errors import BookingNotFound, ValidationError
from .policy import WorkflowPolicy
from .ports import BookingStore
from .workflow import TransitionResult, WorkflowEngine

logger = logging.getLogger(__name__)


class CancellationWorkflow:
    """
    Cancellation is an ordinary transition into ``cancelled``.

    The refund decision is made here against the status just read and
    written into the StatusUpdate metadata; the transition is pinned to that
    status so the decision and the committed write always agree. Money moves
    in the ``cancelled`` entry effect, so only the winning writer refunds.
    """

    def __init__(self, store: BookingStore, engine: WorkflowEngine, policy: WorkflowPolicy, clock=utcnow):
        self.store = store
        self.engine = engine
        self.policy = policy
        self.clock = clock

    async def cancel(
        self,
        booking_id: str,
        actor: Actor,
        reason: str | None = None,
        refund_pct_override: int | None = None,
    ) -> TransitionResult:
        if refund_pct_override is not None and actor.role != ActorRole.ADMIN:
            raise ValidationError("Only an admin may override the refund percentage")

        booking = await self.store.get_booking(booking_id)
        if booking is None:
            raise BookingNotFound(booking_id)

        if not self.policy.allows(booking.status, BookingStatus.CANCELLED):
            raise ValidationError(f"A {booking.status.value} booking cannot be cancelled")

        hours = (booking.scheduled_start - self.clock()).total_seconds() / 3600
        decision = self.policy.refunds.evaluate(
            booking.status, actor.role, hours, booking.total, override_pct=refund_pct_override
        )
        logger.info(
            "cancel %s by %s: rule=%s pct=%s amount=%s",
            booking.id, actor.label, decision.rule, decision.refund_pct, decision.refund_amount,
        )

        return await self.engine.apply_transition(
            booking.id,
            BookingStatus.CANCELLED,
            actor,
            notes=reason,
            metadata=decision.as_metadata(),
            expected_status=booking.status,
            expected_version=booking.status_version,
        )
