"""Tests for the booking operations HTTP client."""

import json

import httpx
import pytest
from datetime import datetime

from app.core.scheduling.backend import (
    ConflictError,
    NotFoundError,
    TransientBackendError,
    ValidationFailedError,
)
from app.core.scheduling.booking_client import HttpBookingBackend


def _backend(handler) -> HttpBookingBackend:
    return HttpBookingBackend(
        base_url="http://booking.test",
        timeout=1.0,
        transport=httpx.MockTransport(handler),
    )


class TestHttpBookingBackend:
    """Test request shape and error mapping."""

    @pytest.mark.asyncio
    async def test_request_shape(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["org"] = request.headers["X-Organization-ID"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"data": [{"id": "prov-1", "name": "Dr. Smith"}]})

        backend = _backend(handler)
        providers = await backend.list_providers("org-1")
        await backend.close()

        assert seen == {
            "path": "/api/booking",
            "org": "org-1",
            "body": {"functionName": "providers.list", "parameters": {}},
        }
        assert providers[0].name == "Dr. Smith"

    @pytest.mark.asyncio
    async def test_unwrapped_payload(self):
        backend = _backend(lambda request: httpx.Response(200, json=[{"id": "op-1", "name": "Room 1"}]))

        operatories = await backend.list_operatories("org-1")

        assert operatories[0].id == "op-1"

    @pytest.mark.asyncio
    async def test_list_appointments_params(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(json.loads(request.content)["parameters"])
            return httpx.Response(200, json={"data": []})

        backend = _backend(handler)
        await backend.list_appointments(
            "org-1", date_start=datetime(2026, 3, 2), patient_id="pat-jane"
        )

        assert seen == {"date_start": "2026-03-02T00:00:00", "patient_id": "pat-jane"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,error",
        [
            (404, NotFoundError),
            (400, ValidationFailedError),
            (422, ValidationFailedError),
            (409, ConflictError),
            (429, TransientBackendError),
            (503, TransientBackendError),
        ],
    )
    async def test_error_mapping(self, status, error):
        backend = _backend(lambda request: httpx.Response(status, json={"error": "nope"}))

        with pytest.raises(error) as exc_info:
            await backend.call("org-1", "appointments.create", {})

        assert exc_info.value.message == "nope"
        assert exc_info.value.operation == "appointments.create"

    @pytest.mark.asyncio
    async def test_not_found_entity(self):
        backend = _backend(
            lambda request: httpx.Response(404, json={"error": "No such patient", "entity": "patient"})
        )

        with pytest.raises(NotFoundError) as exc_info:
            await backend.call("org-1", "patients.get", {"patient_id": "pat-x"})

        assert exc_info.value.entity == "patient"

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        backend = _backend(handler)

        with pytest.raises(TransientBackendError):
            await backend.call("org-1", "providers.list", {})

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        backend = _backend(handler)

        with pytest.raises(TransientBackendError):
            await backend.call("org-1", "providers.list", {})

    @pytest.mark.asyncio
    async def test_requires_organization(self):
        backend = _backend(lambda request: httpx.Response(200, json={}))

        with pytest.raises(ValidationFailedError):
            await backend.call("", "providers.list", {})
