"""
HTTP client for the booking operations API.

The booking API exposes one generic endpoint:
    POST /api/booking  {"functionName": <operation>, "parameters": {...}}

and scopes every call with the X-Organization-ID header. HTTP failures are
mapped onto the typed booking errors:
    404           -> NotFoundError
    400, 422      -> ValidationFailedError
    409           -> ConflictError
    5xx, timeout  -> TransientBackendError
"""

import logging
from typing import Any, Optional

import httpx

from app.config import get_settings
from app.core.scheduling.backend import (
    BookingBackend,
    ConflictError,
    NotFoundError,
    TransientBackendError,
    ValidationFailedError,
)

logger = logging.getLogger(__name__)


class HttpBookingBackend(BookingBackend):
    """Booking operations over the booking HTTP API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize client.

        Args:
            base_url: Booking API base URL (defaults to settings)
            timeout: Request timeout in seconds (defaults to settings)
            transport: Optional httpx transport (for testing)
        """
        settings = get_settings()
        self.base_url = base_url or settings.booking_api_url
        self.timeout = timeout or settings.booking_api_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def call(
        self,
        organization_id: str,
        operation: str,
        params: dict[str, Any],
    ) -> Any:
        if not organization_id:
            raise ValidationFailedError(
                "organization_id is required", operation=operation
            )

        client = await self._get_client()

        try:
            response = await client.post(
                "/api/booking",
                json={"functionName": operation, "parameters": params},
                headers={"X-Organization-ID": organization_id},
            )
        except httpx.TimeoutException as e:
            logger.warning(f"Booking API timeout on {operation}: {e}")
            raise TransientBackendError(f"Timed out calling {operation}", operation) from e
        except httpx.TransportError as e:
            logger.warning(f"Booking API unreachable on {operation}: {e}")
            raise TransientBackendError(f"Could not reach booking API: {e}", operation) from e

        if response.status_code >= 400:
            self._raise_for_status(operation, response)

        data = response.json()
        if isinstance(data, dict) and "data" in data:
            return data["data"]
        return data

    def _raise_for_status(self, operation: str, response: httpx.Response) -> None:
        """Map an error response onto a typed booking error."""
        try:
            body = response.json()
        except ValueError:
            body = {}
        message = body.get("error") or body.get("message") or response.text or "error"
        status = response.status_code

        logger.info(f"Booking API {operation} returned {status}: {message}")

        if status == 404:
            raise NotFoundError(message, operation=operation, entity=body.get("entity", ""))
        if status in (400, 422):
            raise ValidationFailedError(message, operation=operation)
        if status == 409:
            raise ConflictError(message, operation=operation)
        if status >= 500 or status == 429:
            raise TransientBackendError(message, operation=operation)
        raise ValidationFailedError(message, operation=operation)
