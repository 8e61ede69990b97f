import logging

from .domain import utcnow
from .ports import NotificationDispatcher

logger = logging.getLogger(__name__)


class OperatorAlerts:
    """
    Operator-visible alarms: rollback failures, stuck transactions, failed
    payouts, side effects that errored after a committed transition.

    Always logged at CRITICAL; also pushed to the admin target through the
    notification dispatcher when one is configured.
    """

    def __init__(self, dispatcher: NotificationDispatcher | None = None, admin_target: str | None = None):
        self.dispatcher = dispatcher
        self.admin_target = admin_target

    async def raise_alert(self, kind: str, message: str, **context) -> None:
        logger.critical("[alert:%s] %s %s", kind, message, context)

        if not self.dispatcher or not self.admin_target:
            return

        payload = {
            "kind": kind,
            "message": message,
            "raised_at": utcnow().isoformat(),
            **{k: str(v) for k, v in context.items()},
        }
        try:
            await self.dispatcher.send(self.admin_target, "ops.alert", payload)
        except Exception:
            logger.exception("failed to deliver %s alert to %s", kind, self.admin_target)
