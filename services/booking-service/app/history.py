from collections import defaultdict
from datetime import datetime

from .domain import BookingStatus, StatusUpdate, utcnow
from .errors import BookingNotFound
from .policy import WorkflowPolicy, load_policy
from .ports import BookingStore


class StatusHistory:
    """Read side of the status ledger. Nothing here writes."""

    def __init__(self, store: BookingStore, policy: WorkflowPolicy | None = None, clock=utcnow):
        self.store = store
        self.policy = policy or load_policy()
        self.clock = clock

    async def timeline(self, booking_id: str) -> list[StatusUpdate]:
        return await self.store.list_status_updates(booking_id)

    async def time_in_state(self, booking_id: str, now: datetime | None = None) -> dict[BookingStatus, float]:
        """Seconds spent in each status; the open interval runs until ``now``."""
        booking = await self.store.get_booking(booking_id)
        if booking is None:
            raise BookingNotFound(booking_id)

        now = now or self.clock()
        totals: dict[BookingStatus, float] = defaultdict(float)
        status, since = BookingStatus.REQUESTED, booking.created_at

        for update in await self.store.list_status_updates(booking_id):
            totals[update.previous_status] += (update.timestamp - since).total_seconds()
            status, since = update.new_status, update.timestamp

        if not self.policy.is_terminal(booking.status):
            totals[status] += max(0.0, (now - since).total_seconds())
        return dict(totals)

    async def cancellation_rate(self, since: datetime) -> float:
        created = await self.store.count_bookings_created(since)
        if not created:
            return 0.0
        cancelled = await self.store.count_status_entries(BookingStatus.CANCELLED, since)
        return cancelled / created
