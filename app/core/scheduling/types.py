"""
Scheduling data types.

All identifiers are strings as returned by the booking operations API.
All datetimes are naive clinic-local wall-clock times.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Optional


class AppointmentStatus(str, Enum):
    """Lifecycle status of an appointment."""

    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO string (or pass through a datetime) into a naive datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed.replace(tzinfo=None)


def overlaps(
    start_a: datetime,
    end_a: datetime,
    start_b: datetime,
    end_b: datetime,
) -> bool:
    """Half-open interval overlap: touching intervals do not overlap."""
    return start_a < end_b and end_a > start_b


@dataclass
class Provider:
    """Dentist or hygienist who can be booked."""

    id: str
    name: str
    is_active: bool = True
    specialty: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "Provider":
        """Create from API response dict."""
        return cls(
            id=str(data.get("id", "")),
            name=data.get("name", ""),
            is_active=data.get("is_active", True),
            specialty=data.get("specialty"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "is_active": self.is_active,
            "specialty": self.specialty,
        }


@dataclass
class Operatory:
    """Bookable room or chair."""

    id: str
    name: str
    is_active: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> "Operatory":
        """Create from API response dict."""
        return cls(
            id=str(data.get("id", "")),
            name=data.get("name", ""),
            is_active=data.get("is_active", True),
        )

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "is_active": self.is_active}


@dataclass
class ScheduleBlock:
    """A provider's declared working time, optionally pinned to one operatory."""

    provider_id: str
    start: datetime
    end: datetime
    operatory_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "ScheduleBlock":
        """Create from API response dict."""
        operatory_id = data.get("operatory_id")
        return cls(
            provider_id=str(data.get("provider_id", "")),
            start=parse_datetime(data["start"]),
            end=parse_datetime(data["end"]),
            operatory_id=str(operatory_id) if operatory_id is not None else None,
        )

    def to_dict(self) -> dict:
        return {
            "provider_id": self.provider_id,
            "operatory_id": self.operatory_id,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
        }


@dataclass
class Appointment:
    """Existing appointment as seen by the scheduler."""

    id: str
    patient_id: str
    provider_id: str
    operatory_id: Optional[str]
    start: datetime
    duration_minutes: int = 30
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    appointment_type: Optional[str] = None
    note: Optional[str] = None

    @property
    def end(self) -> datetime:
        return self.start + timedelta(minutes=self.duration_minutes)

    @property
    def is_active(self) -> bool:
        """Cancelled appointments never block time."""
        return self.status != AppointmentStatus.CANCELLED

    @classmethod
    def from_dict(cls, data: dict) -> "Appointment":
        """Create from API response dict."""
        operatory_id = data.get("operatory_id")
        return cls(
            id=str(data.get("id", "")),
            patient_id=str(data.get("patient_id", "")),
            provider_id=str(data.get("provider_id", "")),
            operatory_id=str(operatory_id) if operatory_id is not None else None,
            start=parse_datetime(data["start_time"]),
            duration_minutes=int(data.get("duration_minutes", 30)),
            status=AppointmentStatus(data.get("status", AppointmentStatus.SCHEDULED.value)),
            appointment_type=data.get("appointment_type"),
            note=data.get("note"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "patient_id": self.patient_id,
            "provider_id": self.provider_id,
            "operatory_id": self.operatory_id,
            "start_time": self.start.isoformat(),
            "duration_minutes": self.duration_minutes,
            "status": self.status.value,
            "appointment_type": self.appointment_type,
            "note": self.note,
        }


@dataclass
class Patient:
    """Patient record."""

    id: str
    first_name: str
    last_name: str
    phone: Optional[str] = None
    birthdate: Optional[str] = None  # YYYY-MM-DD
    email: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @classmethod
    def from_dict(cls, data: dict) -> "Patient":
        """Create from API response dict."""
        return cls(
            id=str(data.get("id", "")),
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            phone=data.get("phone"),
            birthdate=data.get("birthdate"),
            email=data.get("email"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "phone": self.phone,
            "birthdate": self.birthdate,
            "email": self.email,
        }


@dataclass
class SlotCandidate:
    """
    A bookable interval for one provider/operatory pair.

    Produced by the slot planner. feasible=False carries the reason the
    interval cannot be booked ("conflict" or "outside_schedule").
    """

    start: datetime
    provider_id: str
    operatory_id: Optional[str]
    duration_minutes: int = 30
    provider_name: str = ""
    feasible: bool = True
    reason: Optional[str] = None

    @property
    def end(self) -> datetime:
        return self.start + timedelta(minutes=self.duration_minutes)

    def same_slot(self, other: "SlotCandidate") -> bool:
        """Identity of a slot: start, provider and operatory."""
        return (
            self.start == other.start
            and self.provider_id == other.provider_id
            and self.operatory_id == other.operatory_id
        )

    def to_dict(self) -> dict:
        return {
            "start": self.start.isoformat(),
            "provider_id": self.provider_id,
            "operatory_id": self.operatory_id,
            "duration_minutes": self.duration_minutes,
            "provider_name": self.provider_name,
            "feasible": self.feasible,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SlotCandidate":
        return cls(
            start=parse_datetime(data["start"]),
            provider_id=str(data["provider_id"]),
            operatory_id=data.get("operatory_id"),
            duration_minutes=int(data.get("duration_minutes", 30)),
            provider_name=data.get("provider_name", ""),
            feasible=data.get("feasible", True),
            reason=data.get("reason"),
        )


@dataclass
class BookingEvent:
    """Structured event emitted after a booking operation completes."""

    event_type: str  # appointment_created, appointment_rescheduled, appointment_cancelled
    organization_id: str
    session_id: str
    appointment_id: Optional[str] = None
    patient_name: Optional[str] = None
    appointment_time: Optional[datetime] = None
    appointment_type: Optional[str] = None
    provider_name: Optional[str] = None
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type,
            "organization_id": self.organization_id,
            "session_id": self.session_id,
            "appointment_id": self.appointment_id,
            "patient_name": self.patient_name,
            "appointment_time": (
                self.appointment_time.isoformat() if self.appointment_time else None
            ),
            "appointment_type": self.appointment_type,
            "provider_name": self.provider_name,
            "extra": self.extra,
        }
