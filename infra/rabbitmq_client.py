"""
RabbitMQ client for notification events.

Purpose:
- Publish notification events (subscription purchased/cancelled, invoice
  paid/failed, trip generation summary, driver assignment needed)
- Consume the notifications queue in workers/notification_worker.py

Production notes:
- Durable queue and persistent messages, so a broker restart loses nothing
- Consumers ack only after delivery; failed deliveries are requeued once
- RABBITMQ_URL=disabled turns publishing off; NotificationService then
  delivers through tools.notifier directly
"""
import json
import logging
from typing import Awaitable, Callable, Optional

import aio_pika

from config.settings import settings

logger = logging.getLogger(__name__)

NOTIFICATIONS_QUEUE = "notifications"


class RabbitMQClient:
    def __init__(self, url: str):
        self.url = url
        self._connection: Optional[aio_pika.abc.AbstractRobustConnection] = None
        self._channel: Optional[aio_pika.abc.AbstractChannel] = None

    @property
    def enabled(self) -> bool:
        return bool(self.url) and self.url != "disabled"

    async def connect(self):
        """Lazily connect to RabbitMQ, open a channel and declare the queue."""
        if self._connection and not self._connection.is_closed:
            return
        logger.info("[RabbitMQClient] Connecting to %s", self.url)
        self._connection = await aio_pika.connect_robust(self.url)
        self._channel = await self._connection.channel()
        await self._channel.set_qos(prefetch_count=10)
        await self._channel.declare_queue(NOTIFICATIONS_QUEUE, durable=True)
        logger.info("[RabbitMQClient] Connected and queue declared")

    async def disconnect(self):
        if self._connection and not self._connection.is_closed:
            await self._connection.close()
            logger.info("[RabbitMQClient] Disconnected")
        self._connection = None
        self._channel = None

    async def publish_notification(self, user_id: str, message: str, channel: str = "console",
                                   event: str | None = None, phone: str | None = None) -> bool:
        """
        Publish to the 'notifications' queue.

        Payload:
        {"type": "notification", "event": "...", "user_id": "...",
         "message": "...", "channel": "console|sms", "phone": "+880..." | null}
        """
        if not self.enabled:
            return False
        await self.connect()
        payload = {
            "type": "notification",
            "event": event,
            "user_id": user_id,
            "message": message,
            "channel": channel,
            "phone": phone,
        }
        logger.debug("[RabbitMQClient] Publishing notification: %s", payload)
        await self._channel.default_exchange.publish(
            aio_pika.Message(
                body=json.dumps(payload).encode("utf-8"),
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            ),
            routing_key=NOTIFICATIONS_QUEUE,
        )
        return True

    async def consume_notifications(self, handler: Callable[[dict], Awaitable[bool]]):
        """
        Feed every queued notification to `handler` until cancelled.
        handler returns True when delivered; False requeues the message once.
        """
        await self.connect()
        queue = await self._channel.declare_queue(NOTIFICATIONS_QUEUE, durable=True)
        async with queue.iterator() as messages:
            async for message in messages:
                try:
                    payload = json.loads(message.body.decode("utf-8"))
                except (UnicodeDecodeError, json.JSONDecodeError):
                    logger.error("[RabbitMQClient] Dropping malformed message %s", message.message_id)
                    await message.reject(requeue=False)
                    continue
                delivered = await handler(payload)
                if delivered:
                    await message.ack()
                else:
                    await message.reject(requeue=not message.redelivered)


# Singleton instance, used by NotificationService and the worker
rabbitmq_client = RabbitMQClient(settings.RABBITMQ_URL)
