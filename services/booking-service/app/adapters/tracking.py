from shared.events import build_event, to_json
from shared.rabbitmq import RabbitPublisher


class RabbitLocationTracker:
    """Location tracking runs in its own service; we only tell it when to start and stop."""

    def __init__(self, publisher: RabbitPublisher):
        self.publisher = publisher

    async def start(self, booking_id: str, worker_id: str | None) -> None:
        event = build_event("tracking.start", {"booking_id": booking_id, "worker_id": worker_id})
        await self.publisher.publish("tracking.start", to_json(event))

    async def stop(self, booking_id: str) -> None:
        event = build_event("tracking.stop", {"booking_id": booking_id})
        await self.publisher.publish("tracking.stop", to_json(event))
