# services/notification_service.py
import logging
from collections import deque

from infra.rabbitmq_client import RabbitMQClient, rabbitmq_client
from tools import notifier

logger = logging.getLogger(__name__)


class NotificationService:
    """
    Fire-and-forget notifications for billing and scheduling flows.

    - Preferred: publish to RabbitMQ (workers/notification_worker.py delivers)
    - Fallback: tools.notifier (log line or Twilio SMS)

    notify() never raises: a notification problem must not undo a purchase,
    a charge or a generated trip.

    Only the last `history` records are kept in memory.
    """

    def __init__(self, client: RabbitMQClient | None = rabbitmq_client, history: int = 100):
        self.client = client
        self.sent_notifications = deque(maxlen=history)

    async def notify(self, user_id: str, message: str, event: str | None = None,
                     channel: str = "console", phone: str | None = None) -> dict:
        if self.client is not None and self.client.enabled:
            try:
                ok = await self.client.publish_notification(user_id, message, channel, event=event, phone=phone)
                record = {"user_id": user_id, "message": message, "channel": channel, "event": event, "published": ok}
                self.sent_notifications.append(record)
                return record
            except Exception as e:
                logger.error("RabbitMQ publish failed (event=%s, user=%s): %s", event, user_id, e)

        try:
            record = notifier.send_notification(user_id, message, channel, phone=phone, event=event)
        except Exception as e:
            logger.error("Local notify failed (event=%s, user=%s): %s", event, user_id, e)
            record = {"user_id": user_id, "message": message, "channel": channel, "event": event, "error": str(e)}
        self.sent_notifications.append(record)
        return record

    def recent_notifications(self, limit: int = 20):
        return list(self.sent_notifications)[-limit:]


# singleton
notification_service = NotificationService()
