import asyncio
import logging
from datetime import timedelta

from .domain import TransactionStatus, utcnow
from .errors import ConflictError
from .ports import BookingStore

logger = logging.getLogger(__name__)


class StaleTransactionSweeper:
    """Fails transactions stuck in pending/processing past the threshold and alerts on each."""

    def __init__(self, store: BookingStore, alerts, threshold: timedelta = timedelta(minutes=30), clock=utcnow):
        self.store = store
        self.alerts = alerts
        self.threshold = threshold
        self.clock = clock

    async def sweep_once(self) -> list[str]:
        cutoff = self.clock() - self.threshold
        failed = []
        for tx in await self.store.list_stale_transactions(cutoff):
            try:
                await self.store.update_transaction(
                    tx.id,
                    tx.status,
                    status=TransactionStatus.FAILED,
                    error_reason="stale transaction",
                    completed_at=self.clock(),
                )
            except ConflictError:
                # finished while we were looking
                continue
            failed.append(tx.id)
            await self.alerts.raise_alert(
                "stale_transaction",
                f"transaction stuck in {tx.status.value} since {tx.created_at.isoformat()}",
                transaction_id=tx.id,
                booking_id=tx.booking_id,
                payment_intent_id=tx.payment_intent_id,
            )
        if failed:
            logger.warning("marked %d stale transactions failed", len(failed))
        return failed

    async def run(self, stop_event: asyncio.Event, interval_seconds: float = 60.0):
        while not stop_event.is_set():
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("stale transaction sweep failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                continue
