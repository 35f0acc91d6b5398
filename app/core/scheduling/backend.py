"""
Booking operations contract.

Every booking read/write goes through a BookingBackend: a single generic
``call(organization_id, operation, params)`` plus typed helpers used by the
slot planner. Adapters raise the typed failures below; nothing else leaks
out of an adapter.

Operations:
    patients.search, patients.get, patients.create, patients.update
    providers.list, providers.get
    operatories.list
    schedules.list
    appointments.list, appointments.create, appointments.update,
    appointments.cancel
    tenant.agent_config
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from app.core.scheduling.types import (
    Appointment,
    Operatory,
    Provider,
    ScheduleBlock,
)

logger = logging.getLogger(__name__)


class BookingError(Exception):
    """Base class for typed booking operation failures."""

    def __init__(self, message: str, operation: str = ""):
        super().__init__(message)
        self.message = message
        self.operation = operation


class NotFoundError(BookingError):
    """No matching patient, provider, operatory or appointment."""

    def __init__(self, message: str, operation: str = "", entity: str = ""):
        super().__init__(message, operation)
        self.entity = entity


class ValidationFailedError(BookingError):
    """The backend rejected the arguments."""


class ConflictError(BookingError):
    """The requested interval is no longer free."""


class TransientBackendError(BookingError):
    """Timeout, connection failure or server error. Safe to retry once."""


class BookingBackend(ABC):
    """
    Abstract booking operations collaborator.

    Implementations must scope every call to the given organization.
    """

    @abstractmethod
    async def call(
        self,
        organization_id: str,
        operation: str,
        params: dict[str, Any],
    ) -> Any:
        """
        Invoke a named booking operation.

        Raises:
            NotFoundError, ValidationFailedError, ConflictError,
            TransientBackendError
        """

    async def close(self) -> None:
        """Release any held resources."""

    # === Typed helpers ===

    async def list_providers(self, organization_id: str) -> list[Provider]:
        data = await self.call(organization_id, "providers.list", {})
        return [Provider.from_dict(p) for p in data or []]

    async def list_operatories(self, organization_id: str) -> list[Operatory]:
        data = await self.call(organization_id, "operatories.list", {})
        return [Operatory.from_dict(o) for o in data or []]

    async def list_schedules(
        self,
        organization_id: str,
        date_start: datetime,
        date_end: datetime,
        provider_id: Optional[str] = None,
    ) -> list[ScheduleBlock]:
        params: dict[str, Any] = {
            "date_start": date_start.isoformat(),
            "date_end": date_end.isoformat(),
        }
        if provider_id:
            params["provider_id"] = provider_id
        data = await self.call(organization_id, "schedules.list", params)
        return [ScheduleBlock.from_dict(s) for s in data or []]

    async def list_appointments(
        self,
        organization_id: str,
        date_start: Optional[datetime] = None,
        date_end: Optional[datetime] = None,
        provider_id: Optional[str] = None,
        patient_id: Optional[str] = None,
    ) -> list[Appointment]:
        params: dict[str, Any] = {}
        if date_start:
            params["date_start"] = date_start.isoformat()
        if date_end:
            params["date_end"] = date_end.isoformat()
        if provider_id:
            params["provider_id"] = provider_id
        if patient_id:
            params["patient_id"] = patient_id
        data = await self.call(organization_id, "appointments.list", params)
        return [Appointment.from_dict(a) for a in data or []]

    async def get_agent_config(self, organization_id: str) -> Optional[dict]:
        """Fetch the tenant's agent configuration, or None when unset."""
        return await self.call(organization_id, "tenant.agent_config", {})

    # === Backend-owned defaults ===

    async def resolve_default(self, organization_id: str, policy: str) -> Any:
        """
        Resolve a named default declared on a FunctionSpec parameter.

        Supported policies:
            first_active_operatory: lowest-id active operatory of the organization
        """
        match policy:
            case "first_active_operatory":
                operatories = [
                    o for o in await self.list_operatories(organization_id)
                    if o.is_active
                ]
                if not operatories:
                    raise NotFoundError(
                        "Organization has no active operatory",
                        operation="operatories.list",
                        entity="operatory",
                    )
                operatories.sort(key=lambda o: o.id)
                logger.debug(
                    f"Default operatory for org={organization_id}: {operatories[0].id}"
                )
                return operatories[0].id
            case _:
                raise ValueError(f"Unknown default policy: {policy}")
