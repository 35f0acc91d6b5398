"""
In-memory booking operations for local development and tests.

Provides the same operations as the booking HTTP API but keeps data in
process memory, partitioned by organization. Writes that can double-book
run under a lock and re-check conflicts, so concurrent sessions racing for
the same slot see a ConflictError on the second commit.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Optional
from uuid import uuid4

from app.core.scheduling.backend import (
    BookingBackend,
    ConflictError,
    NotFoundError,
    ValidationFailedError,
)
from app.core.scheduling.types import (
    Appointment,
    AppointmentStatus,
    Operatory,
    Patient,
    Provider,
    ScheduleBlock,
    overlaps,
    parse_datetime,
)

logger = logging.getLogger(__name__)

_DIGITS = re.compile(r"\D")


def _normalize_phone(phone: Optional[str]) -> str:
    digits = _DIGITS.sub("", phone or "")
    return digits[-10:]


@dataclass
class OrganizationData:
    """All booking data for one organization."""

    providers: dict[str, Provider] = field(default_factory=dict)
    operatories: dict[str, Operatory] = field(default_factory=dict)
    schedules: list[ScheduleBlock] = field(default_factory=list)
    appointments: dict[str, Appointment] = field(default_factory=dict)
    patients: dict[str, Patient] = field(default_factory=dict)
    agent_config: Optional[dict] = None


class InMemoryBookingBackend(BookingBackend):
    """
    In-memory booking backend.

    Data is created through the seeding helpers (add_provider, add_schedule,
    ...) or through the regular write operations.
    """

    def __init__(self, demo_data: bool = False):
        """Initialize backend.

        Args:
            demo_data: Seed every organization with seed_demo() on first use
        """
        self._orgs: dict[str, OrganizationData] = {}
        self._demo_data = demo_data
        self._write_lock = asyncio.Lock()
        self.calls: list[tuple[str, str, dict]] = []

    def _org(self, organization_id: str) -> OrganizationData:
        if organization_id not in self._orgs:
            self._orgs[organization_id] = OrganizationData()
            if self._demo_data:
                self.seed_demo(organization_id)
        return self._orgs[organization_id]

    # === Seeding ===

    def add_provider(self, organization_id: str, provider: Provider) -> Provider:
        self._org(organization_id).providers[provider.id] = provider
        return provider

    def add_operatory(self, organization_id: str, operatory: Operatory) -> Operatory:
        self._org(organization_id).operatories[operatory.id] = operatory
        return operatory

    def add_schedule(self, organization_id: str, block: ScheduleBlock) -> ScheduleBlock:
        self._org(organization_id).schedules.append(block)
        return block

    def add_patient(self, organization_id: str, patient: Patient) -> Patient:
        self._org(organization_id).patients[patient.id] = patient
        return patient

    def add_appointment(self, organization_id: str, appointment: Appointment) -> Appointment:
        self._org(organization_id).appointments[appointment.id] = appointment
        return appointment

    def set_agent_config(self, organization_id: str, config: Optional[dict]) -> None:
        self._org(organization_id).agent_config = config

    def seed_demo(self, organization_id: str, days: int = 14, start: Optional[date] = None) -> None:
        """Two providers, two operatories, weekday 08:00-17:00 schedules."""
        self.add_operatory(organization_id, Operatory(id="op-1", name="Room 1"))
        self.add_operatory(organization_id, Operatory(id="op-2", name="Room 2"))
        self.add_provider(organization_id, Provider(id="prov-1", name="Dr. Smith", specialty="General"))
        self.add_provider(organization_id, Provider(id="prov-2", name="Dr. Patel", specialty="Hygiene"))

        first_day = start or date.today()
        for offset in range(days):
            day = first_day + timedelta(days=offset)
            if day.weekday() >= 5:
                continue
            for provider_id, operatory_id in (("prov-1", "op-1"), ("prov-2", "op-2")):
                self.add_schedule(
                    organization_id,
                    ScheduleBlock(
                        provider_id=provider_id,
                        operatory_id=operatory_id,
                        start=datetime.combine(day, time(8, 0)),
                        end=datetime.combine(day, time(17, 0)),
                    ),
                )

    # === Operations ===

    async def call(
        self,
        organization_id: str,
        operation: str,
        params: dict[str, Any],
    ) -> Any:
        if not organization_id:
            raise ValidationFailedError("organization_id is required", operation=operation)

        self.calls.append((organization_id, operation, dict(params)))
        org = self._org(organization_id)

        match operation:
            case "patients.search":
                return self._search_patients(org, params)
            case "patients.get":
                return self._get_patient(org, params, operation).to_dict()
            case "patients.create":
                async with self._write_lock:
                    return self._create_patient(org, params, operation).to_dict()
            case "patients.update":
                async with self._write_lock:
                    return self._update_patient(org, params, operation).to_dict()
            case "providers.list":
                return [p.to_dict() for p in org.providers.values() if p.is_active]
            case "providers.get":
                provider = org.providers.get(str(params.get("provider_id")))
                if provider is None:
                    raise NotFoundError("Provider not found", operation, entity="provider")
                return provider.to_dict()
            case "operatories.list":
                return [o.to_dict() for o in org.operatories.values() if o.is_active]
            case "schedules.list":
                return self._list_schedules(org, params)
            case "appointments.list":
                return self._list_appointments(org, params)
            case "appointments.create":
                async with self._write_lock:
                    return self._create_appointment(org, params, operation).to_dict()
            case "appointments.update":
                async with self._write_lock:
                    return self._update_appointment(org, params, operation).to_dict()
            case "appointments.cancel":
                async with self._write_lock:
                    return self._cancel_appointment(org, params, operation).to_dict()
            case "tenant.agent_config":
                return org.agent_config
            case _:
                raise ValidationFailedError(f"Unknown operation: {operation}", operation)

    # === Patients ===

    def _search_patients(self, org: OrganizationData, params: dict) -> list[dict]:
        first = (params.get("first_name") or "").strip().lower()
        last = (params.get("last_name") or "").strip().lower()
        phone = _normalize_phone(params.get("phone"))

        if not (first or last or phone):
            raise ValidationFailedError(
                "At least one of first_name, last_name or phone is required",
                operation="patients.search",
            )

        matches = []
        for patient in org.patients.values():
            if first and patient.first_name.lower() != first:
                continue
            if last and patient.last_name.lower() != last:
                continue
            if phone and _normalize_phone(patient.phone) != phone:
                continue
            matches.append(patient.to_dict())
        return matches

    def _get_patient(self, org: OrganizationData, params: dict, operation: str) -> Patient:
        patient = org.patients.get(str(params.get("patient_id")))
        if patient is None:
            raise NotFoundError("Patient not found", operation, entity="patient")
        return patient

    def _create_patient(self, org: OrganizationData, params: dict, operation: str) -> Patient:
        missing = [
            name for name in ("first_name", "last_name", "birthdate", "phone")
            if not params.get(name)
        ]
        if missing:
            raise ValidationFailedError(f"Missing fields: {', '.join(missing)}", operation)
        try:
            date.fromisoformat(str(params["birthdate"]))
        except ValueError as e:
            raise ValidationFailedError("birthdate must be YYYY-MM-DD", operation) from e

        patient = Patient(
            id=f"pat-{uuid4().hex[:8]}",
            first_name=params["first_name"],
            last_name=params["last_name"],
            phone=params["phone"],
            birthdate=params["birthdate"],
            email=params.get("email"),
        )
        org.patients[patient.id] = patient
        logger.info(f"Patient created: {patient.id}")
        return patient

    def _update_patient(self, org: OrganizationData, params: dict, operation: str) -> Patient:
        patient = self._get_patient(org, params, operation)
        for name in ("first_name", "last_name", "phone", "birthdate", "email"):
            if params.get(name):
                setattr(patient, name, params[name])
        return patient

    # === Schedules and appointments ===

    def _range(self, params: dict) -> tuple[Optional[datetime], Optional[datetime]]:
        try:
            return parse_datetime(params.get("date_start")), parse_datetime(params.get("date_end"))
        except ValueError as e:
            raise ValidationFailedError(f"Invalid date range: {e}") from e

    def _list_schedules(self, org: OrganizationData, params: dict) -> list[dict]:
        start, end = self._range(params)
        provider_id = params.get("provider_id")
        blocks = []
        for block in org.schedules:
            if provider_id and block.provider_id != provider_id:
                continue
            if start and end and not overlaps(block.start, block.end, start, end):
                continue
            blocks.append(block.to_dict())
        return blocks

    def _list_appointments(self, org: OrganizationData, params: dict) -> list[dict]:
        start, end = self._range(params)
        provider_id = params.get("provider_id")
        patient_id = params.get("patient_id")
        status = params.get("status")

        result = []
        for appointment in sorted(org.appointments.values(), key=lambda a: a.start):
            if provider_id and appointment.provider_id != provider_id:
                continue
            if patient_id and appointment.patient_id != patient_id:
                continue
            if status and appointment.status.value != status:
                continue
            if start and appointment.end <= start:
                continue
            if end and appointment.start >= end:
                continue
            result.append(appointment.to_dict())
        return result

    def _find_conflict(
        self,
        org: OrganizationData,
        provider_id: str,
        operatory_id: Optional[str],
        start: datetime,
        duration_minutes: int,
        exclude_id: Optional[str] = None,
    ) -> Optional[Appointment]:
        end = start + timedelta(minutes=duration_minutes)
        for appointment in org.appointments.values():
            if not appointment.is_active or appointment.id == exclude_id:
                continue
            same_resource = appointment.provider_id == provider_id or (
                operatory_id is not None and appointment.operatory_id == operatory_id
            )
            if same_resource and overlaps(start, end, appointment.start, appointment.end):
                return appointment
        return None

    def _parse_start(self, params: dict, operation: str) -> datetime:
        try:
            start = parse_datetime(params.get("start_time"))
        except ValueError as e:
            raise ValidationFailedError("start_time must be ISO 8601", operation) from e
        if start is None:
            raise ValidationFailedError("start_time is required", operation)
        return start

    def _create_appointment(self, org: OrganizationData, params: dict, operation: str) -> Appointment:
        patient_id = str(params.get("patient_id") or "")
        provider_id = str(params.get("provider_id") or "")
        if not patient_id or not provider_id:
            raise ValidationFailedError("patient_id and provider_id are required", operation)
        if patient_id not in org.patients:
            raise NotFoundError("Patient not found", operation, entity="patient")
        if provider_id not in org.providers:
            raise NotFoundError("Provider not found", operation, entity="provider")

        operatory_id = params.get("operatory_id")
        if operatory_id is not None and operatory_id not in org.operatories:
            raise NotFoundError("Operatory not found", operation, entity="operatory")

        start = self._parse_start(params, operation)
        duration = int(params.get("duration_minutes") or 30)

        conflict = self._find_conflict(org, provider_id, operatory_id, start, duration)
        if conflict is not None:
            raise ConflictError(
                f"Slot {start.isoformat()} overlaps appointment {conflict.id}", operation
            )

        appointment = Appointment(
            id=f"apt-{uuid4().hex[:8]}",
            patient_id=patient_id,
            provider_id=provider_id,
            operatory_id=operatory_id,
            start=start,
            duration_minutes=duration,
            appointment_type=params.get("appointment_type"),
            note=params.get("note"),
        )
        org.appointments[appointment.id] = appointment
        logger.info(f"Appointment created: {appointment.id} at {start.isoformat()}")
        return appointment

    def _get_appointment(self, org: OrganizationData, params: dict, operation: str) -> Appointment:
        appointment = org.appointments.get(str(params.get("appointment_id")))
        if appointment is None:
            raise NotFoundError("Appointment not found", operation, entity="appointment")
        return appointment

    def _update_appointment(self, org: OrganizationData, params: dict, operation: str) -> Appointment:
        appointment = self._get_appointment(org, params, operation)
        if not appointment.is_active:
            raise ValidationFailedError("Cancelled appointments cannot be moved", operation)

        start = self._parse_start(params, operation)
        provider_id = params.get("provider_id") or appointment.provider_id
        operatory_id = params.get("operatory_id") or appointment.operatory_id
        duration = int(params.get("duration_minutes") or appointment.duration_minutes)

        conflict = self._find_conflict(
            org, provider_id, operatory_id, start, duration, exclude_id=appointment.id
        )
        if conflict is not None:
            raise ConflictError(
                f"Slot {start.isoformat()} overlaps appointment {conflict.id}", operation
            )

        appointment.start = start
        appointment.provider_id = provider_id
        appointment.operatory_id = operatory_id
        appointment.duration_minutes = duration
        logger.info(f"Appointment moved: {appointment.id} to {start.isoformat()}")
        return appointment

    def _cancel_appointment(self, org: OrganizationData, params: dict, operation: str) -> Appointment:
        appointment = self._get_appointment(org, params, operation)
        appointment.status = AppointmentStatus.CANCELLED
        logger.info(f"Appointment cancelled: {appointment.id}")
        return appointment
