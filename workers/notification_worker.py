"""
Notification delivery worker.

Purpose:
- Consume notification events from the RabbitMQ 'notifications' queue
- Deliver via tools.notifier (log line, or Twilio SMS for channel=sms)
- Run as a separate process (scale horizontally)

Usage:
- python -m workers.notification_worker
"""
import asyncio
import logging

from core.logging import configure_logging
from infra.rabbitmq_client import RabbitMQClient, rabbitmq_client
from tools import notifier

configure_logging()
logger = logging.getLogger(__name__)


class NotificationDeliveryWorker:
    """Worker to deliver notifications from RabbitMQ queue."""

    def __init__(self, client: RabbitMQClient = rabbitmq_client):
        self.client = client
        self.delivered = 0
        self.failed = 0

    async def deliver(self, notification: dict) -> bool:
        """
        Deliver a single notification.

        Args:
            notification: {event, user_id, message, channel, phone}

        Returns:
            True if delivered (message is acked), False to requeue once
        """
        user_id = notification.get("user_id")
        message = notification.get("message")
        if not user_id or not message:
            logger.error("Dropping notification without user_id/message: %s", notification)
            self.failed += 1
            return True

        try:
            result = await asyncio.to_thread(
                notifier.send_notification,
                user_id,
                message,
                notification.get("channel") or "console",
                notification.get("phone"),
                notification.get("event"),
            )
        except Exception as e:
            logger.error("Delivery failed for %s (event=%s): %s", user_id, notification.get("event"), e)
            self.failed += 1
            return False
        self.delivered += 1
        logger.debug("Delivered %s", result)
        return True

    async def run(self):
        """Consume until cancelled."""
        if not self.client.enabled:
            raise RuntimeError("RABBITMQ_URL is disabled; nothing to consume")
        logger.info("Notification worker started")
        await self.client.connect()
        try:
            await self.client.consume_notifications(self.deliver)
        finally:
            await self.client.disconnect()
            logger.info("Worker stopped. Delivered: %s, Failed: %s", self.delivered, self.failed)


async def main():
    worker = NotificationDeliveryWorker()
    await worker.run()


if __name__ == "__main__":
    # Run worker: python -m workers.notification_worker
    asyncio.run(main())
