import logging
from dataclasses import dataclass

from .domain import Actor, ActorRole, Booking, BookingStatus, StatusUpdate, new_id, utcnow
from .errors import WorkerNotEligible
from .ports import BookingStore

logger = logging.getLogger(__name__)

CLEARED = "cleared"


@dataclass(frozen=True)
class ClaimResult:
    claimed: bool
    booking: Booking | None = None


class ClaimProtocol:
    """
    Exclusive assignment of an open job.

    Eligibility is a fast-fail pre-check only; exclusivity comes from the
    store's single conditional write (an unassigned requested booking
    whose payment is confirmed).
    """

    def __init__(self, store: BookingStore, engine, clock=utcnow):
        self.store = store
        self.engine = engine
        self.clock = clock

    async def check_eligibility(self, worker_id: str) -> None:
        account = await self.store.get_user(worker_id)
        if account is None or account.role != ActorRole.WORKER:
            raise WorkerNotEligible(worker_id, "no worker account")
        if not account.is_active:
            raise WorkerNotEligible(worker_id, "account is inactive")

        profile = await self.store.get_worker_profile(worker_id)
        if profile is None or profile.background_check_status != CLEARED:
            raise WorkerNotEligible(worker_id, "background check not cleared")
        if not profile.payout_onboarding_complete or not profile.payout_destination:
            raise WorkerNotEligible(worker_id, "payout onboarding incomplete")

    async def claim(self, booking_id: str, worker_id: str) -> ClaimResult:
        await self.check_eligibility(worker_id)

        actor = Actor(ActorRole.WORKER, worker_id)
        update = StatusUpdate(
            id=new_id(),
            booking_id=booking_id,
            previous_status=BookingStatus.REQUESTED,
            new_status=BookingStatus.CONFIRMED,
            updated_by=actor.label,
            actor_role=actor.role,
            timestamp=self.clock(),
            notes="Job claimed",
            metadata={"claimed_by": worker_id},
        )

        booking = await self.store.claim_booking(booking_id, worker_id, update)
        if booking is None:
            logger.info("worker %s lost claim on booking %s", worker_id, booking_id)
            return ClaimResult(claimed=False)

        logger.info("worker %s claimed booking %s", worker_id, booking_id)
        await self.engine.after_commit(booking, update)
        return ClaimResult(claimed=True, booking=booking)
