from shared.events import build_event, to_json
from shared.rabbitmq import RabbitPublisher


class RabbitNotificationDispatcher:
    """
    Hands notifications to the delivery service over the ``domain_events``
    exchange (routing key ``notify.<event_type>``). Push delivery itself
    happens downstream.
    """

    def __init__(self, publisher: RabbitPublisher):
        self.publisher = publisher

    async def send(self, target_user_id: str, event_type: str, payload: dict) -> None:
        event = build_event(event_type, {"target_user_id": target_user_id, **payload})
        await self.publisher.publish(f"notify.{event_type}", to_json(event))
