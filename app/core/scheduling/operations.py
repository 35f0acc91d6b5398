"""
Booking operation executor.

Runs a resolved function call against the booking backend:
- always scoped to the session's organization
- slot searches go to the slot planner, not the backend
- every create/update is re-checked for conflicts right before the write
- transient failures are retried a bounded number of times
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from app.config import settings
from app.core.scheduling.availability import SlotPlanner
from app.core.scheduling.backend import (
    BookingBackend,
    ConflictError,
    NotFoundError,
    TransientBackendError,
    ValidationFailedError,
)
from app.core.scheduling.types import (
    Appointment,
    Patient,
    SlotCandidate,
    parse_datetime,
)

logger = logging.getLogger(__name__)


def _day_start(value: Any) -> datetime:
    parsed = parse_datetime(value)
    return datetime(parsed.year, parsed.month, parsed.day)


def day_range(date_start: Any, date_end: Any = None) -> tuple[datetime, datetime]:
    """
    Turn inclusive calendar days into a half-open datetime range.

    "2026-03-02".."2026-03-03" -> [03-02 00:00, 03-04 00:00)
    """
    start = _day_start(date_start)
    end = _day_start(date_end) if date_end else start
    if end < start:
        raise ValidationFailedError("date_end is before date_start", operation="slots.find")
    return start, end + timedelta(days=1)


class BookingExecutor:
    """
    Executes booking operations for the orchestrator.

    Usage:
        executor = BookingExecutor(backend)
        slots = await executor.execute("org-1", "slots.find", {"date_start": "2026-03-02"})
    """

    def __init__(
        self,
        backend: BookingBackend,
        planner: Optional[SlotPlanner] = None,
        clock: Optional[Callable[[], datetime]] = None,
        max_retries: Optional[int] = None,
        retry_delay: float = 0.2,
    ):
        self.backend = backend
        self._clock = clock or datetime.now
        self.planner = planner or SlotPlanner(backend, clock=self._clock)
        self._max_retries = settings.backend_max_retries if max_retries is None else max_retries
        self._retry_delay = retry_delay

    async def execute(
        self,
        organization_id: str,
        operation: str,
        arguments: dict[str, Any],
    ) -> Any:
        """
        Execute one operation, retrying transient failures.

        Returns:
            slots.find          list[SlotCandidate]
            patients.search     list[Patient] (never empty)
            appointments.list   list[Appointment]
            appointments.*      Appointment for create/update/cancel
            anything else       the backend payload as-is

        Raises:
            NotFoundError, ValidationFailedError, ConflictError,
            TransientBackendError (after the retry budget is spent)
        """
        if not organization_id:
            raise ValidationFailedError("organization_id is required", operation=operation)

        attempt = 0
        while True:
            try:
                return await self._execute_once(organization_id, operation, arguments)
            except TransientBackendError as e:
                if attempt >= self._max_retries:
                    logger.error(
                        f"{operation} failed for org={organization_id} after "
                        f"{attempt + 1} attempts: {e.message}"
                    )
                    raise
                attempt += 1
                logger.warning(f"{operation} transient failure, retrying: {e.message}")
                if self._retry_delay:
                    await asyncio.sleep(self._retry_delay)

    async def _execute_once(
        self,
        organization_id: str,
        operation: str,
        arguments: dict[str, Any],
    ) -> Any:
        match operation:
            case "slots.find":
                return await self._find_slots(organization_id, arguments)
            case "patients.search":
                return await self._search_patients(organization_id, arguments)
            case "appointments.list":
                return await self._list_appointments(organization_id, arguments)
            case "appointments.create" | "appointments.update":
                await self._guard_commit(organization_id, operation, arguments)
                data = await self.backend.call(organization_id, operation, arguments)
                return Appointment.from_dict(data)
            case "appointments.cancel":
                data = await self.backend.call(organization_id, operation, arguments)
                return Appointment.from_dict(data)
            case _:
                return await self.backend.call(organization_id, operation, arguments)

    async def _find_slots(self, organization_id: str, arguments: dict) -> list[SlotCandidate]:
        try:
            date_start, date_end = day_range(arguments["date_start"], arguments.get("date_end"))
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationFailedError(f"Invalid date range: {e}", operation="slots.find") from e

        return await self.planner.find_slots(
            organization_id,
            date_start,
            date_end,
            provider_id=arguments.get("provider_id"),
            operatory_id=arguments.get("operatory_id"),
            duration_minutes=arguments.get("duration_minutes"),
            time_preference=arguments.get("time_preference"),
        )

    async def _search_patients(self, organization_id: str, arguments: dict) -> list[Patient]:
        data = await self.backend.call(organization_id, "patients.search", arguments)
        patients = [Patient.from_dict(p) for p in data or []]
        if not patients:
            raise NotFoundError(
                "No patient matches", operation="patients.search", entity="patient"
            )
        return patients

    async def _list_appointments(self, organization_id: str, arguments: dict) -> list[Appointment]:
        """Upcoming, non-cancelled appointments unless a range was given."""
        if arguments.get("date_start"):
            date_start, date_end = day_range(arguments["date_start"], arguments.get("date_end"))
        else:
            date_start, date_end = self._clock(), None
        appointments = await self.backend.list_appointments(
            organization_id,
            date_start=date_start,
            date_end=date_end,
            patient_id=arguments.get("patient_id"),
        )
        return [a for a in appointments if a.is_active]

    async def _guard_commit(self, organization_id: str, operation: str, arguments: dict) -> None:
        """
        Final conflict check immediately before a booking write.

        Raises:
            ConflictError: The interval overlaps an appointment or falls
                outside the provider's schedule
        """
        start = parse_datetime(arguments.get("start_time"))
        provider_id = arguments.get("provider_id")
        if start is None or not provider_id:
            # Backend validates and conflict-checks on its own
            return

        candidate = SlotCandidate(
            start=start,
            provider_id=provider_id,
            operatory_id=arguments.get("operatory_id"),
            duration_minutes=int(
                arguments.get("duration_minutes") or settings.default_appointment_minutes
            ),
        )
        exclude = arguments.get("appointment_id") if operation == "appointments.update" else None
        checked = await self.planner.evaluate(organization_id, candidate, exclude_appointment_id=exclude)
        if not checked.feasible:
            logger.warning(
                f"Commit guard rejected {operation} at {start.isoformat()} "
                f"provider={provider_id}: {checked.reason}"
            )
            raise ConflictError(
                f"Slot {start.isoformat()} is no longer available ({checked.reason})",
                operation=operation,
            )


def slot_search_scope(slot: SlotCandidate) -> dict[str, Any]:
    """Arguments to re-run a slot search around a slot that was lost: same day, same provider."""
    return {
        "date_start": slot.start.date().isoformat(),
        "provider_id": slot.provider_id,
        "duration_minutes": slot.duration_minutes,
    }
