"""Tests for booking event notifications."""

import json

import httpx
import pytest
from datetime import datetime

from app.core.scheduling.types import BookingEvent
from app.infra.notifications import NotificationPublisher


@pytest.fixture
def event():
    return BookingEvent(
        event_type="appointment_created",
        organization_id="org-1",
        session_id="call-1",
        appointment_id="apt-1",
        patient_name="Jane Doe",
        appointment_time=datetime(2026, 3, 2, 9, 30),
        appointment_type="cleaning",
        provider_name="Dr. Smith",
    )


class TestNotificationPublisher:
    """Test webhook delivery."""

    @pytest.mark.asyncio
    async def test_delivers_event_json(self, event):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(202)

        publisher = NotificationPublisher(
            webhook_url="https://hooks.example.com/bookings",
            transport=httpx.MockTransport(handler),
        )

        assert await publisher.deliver(event) is True
        assert received[0]["event_type"] == "appointment_created"
        assert received[0]["appointment_time"] == "2026-03-02T09:30:00"

    @pytest.mark.asyncio
    async def test_failed_delivery_returns_false(self, event):
        publisher = NotificationPublisher(
            webhook_url="https://hooks.example.com/bookings",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )

        assert await publisher.deliver(event) is False

    @pytest.mark.asyncio
    async def test_without_webhook_only_logs(self, event):
        publisher = NotificationPublisher(webhook_url="")

        assert await publisher.deliver(event) is True

    @pytest.mark.asyncio
    async def test_publish_does_not_wait(self, event):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            return httpx.Response(200)

        publisher = NotificationPublisher(
            webhook_url="https://hooks.example.com/bookings",
            transport=httpx.MockTransport(handler),
        )

        task = publisher.publish(event)
        await publisher.drain()

        assert task is not None
        assert task.result() is True
        assert calls == ["/bookings"]

    def test_publish_without_loop_drops_event(self, event):
        publisher = NotificationPublisher(webhook_url="")

        assert publisher.publish(event) is None
