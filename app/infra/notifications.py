"""
Booking Notifications

Publishes BookingEvents after a booking operation completes. Delivery is
fire-and-forget: the turn never waits on it and a failed delivery is only
logged. Events go to settings.notification_webhook_url when configured,
otherwise to the log.
"""

import asyncio
import logging
from typing import Optional

import httpx

from app.config import settings
from app.core.scheduling.types import BookingEvent

logger = logging.getLogger(__name__)


class NotificationPublisher:
    """
    Publishes booking events to the notification component.

    Usage:
        publisher = get_notification_publisher()
        publisher.publish(event)   # returns immediately
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize publisher.

        Args:
            webhook_url: Event webhook (defaults to settings; None logs only)
            timeout: Delivery timeout in seconds
            transport: Optional httpx transport (for testing)
        """
        self.webhook_url = webhook_url if webhook_url is not None else settings.notification_webhook_url
        self.timeout = timeout
        self._transport = transport
        self._pending: set[asyncio.Task] = set()

    def publish(self, event: BookingEvent) -> Optional[asyncio.Task]:
        """Schedule delivery of an event without waiting for it."""
        try:
            task = asyncio.get_running_loop().create_task(self.deliver(event))
        except RuntimeError:
            logger.warning(f"No event loop, dropping {event.event_type} notification")
            return None
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def deliver(self, event: BookingEvent) -> bool:
        """
        Deliver one event.

        Returns:
            True if delivered (or logged), False on failure
        """
        if not self.webhook_url:
            logger.info(
                f"Booking event {event.event_type}: org={event.organization_id} "
                f"appointment={event.appointment_id} time={event.appointment_time}"
            )
            return True

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.webhook_url, json=event.to_dict())
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Notification delivery failed for {event.event_type}: {e}")
            return False

        logger.info(f"Notification delivered: {event.event_type} appointment={event.appointment_id}")
        return True

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


# Singleton
_publisher: Optional[NotificationPublisher] = None


def get_notification_publisher() -> NotificationPublisher:
    """Get singleton NotificationPublisher."""
    global _publisher
    if _publisher is None:
        _publisher = NotificationPublisher()
    return _publisher
