"""
Conversation state models.

ConversationState holds the partially-collected booking facts for one
session: who the patient is, what they want, and which booking action is
in progress. Updates are shallow merges per field group where an omitted
(None) value never deletes a known fact; clearing requires UNSET.
"""

import json
import logging
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from app.core.scheduling.types import Appointment, SlotCandidate

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class _UnsetType:
    """Explicit 'clear this field' marker, distinct from omission (None)."""

    _instance: Optional["_UnsetType"] = None

    def __new__(cls) -> "_UnsetType":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET = _UnsetType()


class PendingAction(str, Enum):
    """Booking operation in progress."""

    CREATE = "create"
    RESCHEDULE = "reschedule"
    CANCEL = "cancel"


@dataclass
class PatientInfo:
    """What we know about the caller's identity."""

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    birthdate: Optional[str] = None  # YYYY-MM-DD
    email: Optional[str] = None
    patient_id: Optional[str] = None
    is_new_patient: Optional[bool] = None

    @property
    def full_name(self) -> Optional[str]:
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) if parts else None

    @property
    def is_identified(self) -> bool:
        return self.patient_id is not None

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict) -> "PatientInfo":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class AppointmentIntent:
    """What the caller wants booked, moved or cancelled."""

    appointment_type: Optional[str] = None
    preferred_date: Optional[str] = None  # YYYY-MM-DD
    preferred_time: Optional[str] = None  # morning/afternoon/evening or HH:MM
    provider_name: Optional[str] = None
    duration_minutes: Optional[int] = None
    existing_appointment_id: Optional[str] = None
    selected_slot: Optional[SlotCandidate] = None

    def to_dict(self) -> dict:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["selected_slot"] = self.selected_slot.to_dict() if self.selected_slot else None
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "AppointmentIntent":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        if values.get("selected_slot"):
            values["selected_slot"] = SlotCandidate.from_dict(values["selected_slot"])
        return cls(**values)


@dataclass
class FunctionCallRecord:
    """One executed (or blocked) function call, for audit and prompting."""

    name: str
    arguments: dict
    outcome: str  # ok, missing, not_found, conflict, transient, validation, rejected
    sources: dict = field(default_factory=dict)
    error: Optional[str] = None
    at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "arguments": self.arguments,
            "outcome": self.outcome,
            "sources": self.sources,
            "error": self.error,
            "at": self.at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FunctionCallRecord":
        return cls(
            name=data["name"],
            arguments=data.get("arguments", {}),
            outcome=data.get("outcome", "ok"),
            sources=data.get("sources", {}),
            error=data.get("error"),
            at=datetime.fromisoformat(data["at"]) if data.get("at") else _utcnow(),
        )


@dataclass
class ConversationState:
    """
    Per-session booking state.

    Invariants:
    - patient.patient_id, once resolved, is only replaced after reidentify()
    - appointment_intent.selected_slot is only set by confirm_slot() with a
      candidate that was offered in this session
    - merging an update with omitted (None) fields never changes known facts
    """

    session_id: str
    organization_id: str = ""

    patient: PatientInfo = field(default_factory=PatientInfo)
    appointment_intent: AppointmentIntent = field(default_factory=AppointmentIntent)
    pending_action: Optional[PendingAction] = None

    # Planner output currently on offer to the caller
    offered_slots: list[SlotCandidate] = field(default_factory=list)

    # Existing appointments shown to the caller (reschedule/cancel flows)
    appointments_shown: bool = False
    existing_appointments: list[Appointment] = field(default_factory=list)

    completed_action: Optional[str] = None
    last_booked_appointment_id: Optional[str] = None

    # Text-only conversation history
    messages: list[dict] = field(default_factory=list)
    max_messages: int = 40

    function_calls: list[FunctionCallRecord] = field(default_factory=list)
    max_function_calls: int = 50

    turn_count: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    # === Merge ===

    def merge(
        self,
        patient: Optional[dict] = None,
        appointment_intent: Optional[dict] = None,
        pending_action: Any = None,
    ) -> list[str]:
        """
        Shallow merge per field group.

        None means "not provided" and is ignored; UNSET clears the field.

        Returns:
            Names of the fields that changed, as "group.field"

        Raises:
            ValueError: Unknown field, or an attempt to set selected_slot
                (only confirm_slot() may set it)
        """
        changed: list[str] = []

        if patient:
            for name, value in patient.items():
                if not hasattr(self.patient, name):
                    raise ValueError(f"Unknown patient field: {name}")
                if value is None:
                    continue
                if value is UNSET:
                    value = None
                elif (
                    name == "patient_id"
                    and self.patient.patient_id is not None
                    and value != self.patient.patient_id
                ):
                    logger.warning(
                        f"Session {self.session_id}: ignoring patient_id change "
                        f"without re-identification"
                    )
                    continue
                if getattr(self.patient, name) != value:
                    setattr(self.patient, name, value)
                    changed.append(f"patient.{name}")

        if appointment_intent:
            for name, value in appointment_intent.items():
                if not hasattr(self.appointment_intent, name):
                    raise ValueError(f"Unknown appointment_intent field: {name}")
                if value is None:
                    continue
                if name == "selected_slot" and value is not UNSET:
                    raise ValueError("selected_slot can only be set by confirm_slot()")
                if value is UNSET:
                    value = None
                if getattr(self.appointment_intent, name) != value:
                    setattr(self.appointment_intent, name, value)
                    changed.append(f"appointment_intent.{name}")

        if pending_action is not None:
            new_action = None if pending_action is UNSET else PendingAction(pending_action)
            if new_action != self.pending_action:
                self.pending_action = new_action
                changed.append("pending_action")

        if changed:
            self.updated_at = _utcnow()
        return changed

    # === Slot selection ===

    def offer_slots(self, candidates: list[SlotCandidate]) -> None:
        """Replace the set of slots currently on offer."""
        self.offered_slots = list(candidates)
        self.updated_at = _utcnow()

    def confirm_slot(self, candidate: SlotCandidate) -> bool:
        """
        Record the caller's explicit choice of an offered slot.

        Returns:
            True if the candidate was on offer and is now selected
        """
        for offered in self.offered_slots:
            if offered.same_slot(candidate) and offered.feasible:
                self.appointment_intent.selected_slot = offered
                self.updated_at = _utcnow()
                return True
        logger.warning(
            f"Session {self.session_id}: refusing to select a slot that was not offered"
        )
        return False

    def clear_selected_slot(self) -> None:
        self.merge(appointment_intent={"selected_slot": UNSET})

    # === Identity ===

    def reidentify(self) -> None:
        """Forget the current patient (e.g. "actually it's for someone else")."""
        logger.info(f"Session {self.session_id}: patient re-identification")
        self.patient = PatientInfo()
        self.appointment_intent.existing_appointment_id = None
        self.appointment_intent.selected_slot = None
        self.appointments_shown = False
        self.existing_appointments = []
        self.updated_at = _utcnow()

    def show_appointments(self, appointments: list[Appointment]) -> None:
        self.existing_appointments = list(appointments)
        self.appointments_shown = True
        self.updated_at = _utcnow()

    # === History ===

    def add_message(self, role: str, content: str) -> None:
        self.messages.append({"role": role, "content": content})
        if len(self.messages) > self.max_messages:
            self.messages = self.messages[-self.max_messages:]
        self.updated_at = _utcnow()

    def record_call(
        self,
        name: str,
        arguments: dict,
        outcome: str,
        sources: Optional[dict] = None,
        error: Optional[str] = None,
    ) -> FunctionCallRecord:
        record = FunctionCallRecord(
            name=name,
            arguments=dict(arguments),
            outcome=outcome,
            sources=dict(sources or {}),
            error=error,
        )
        self.function_calls.append(record)
        if len(self.function_calls) > self.max_function_calls:
            self.function_calls = self.function_calls[-self.max_function_calls:]
        return record

    def recent_turns(self, limit: int) -> list[dict]:
        return self.messages[-limit:] if limit > 0 else []

    # === Snapshots ===

    def snapshot(self) -> "ConversationState":
        """Deep copy used to roll back a failed turn."""
        return ConversationState.from_dict(self.to_dict())

    def restore_facts(self, snapshot: "ConversationState") -> None:
        """Roll booking facts back to a snapshot; history and call log are kept."""
        self.patient = snapshot.patient
        self.appointment_intent = snapshot.appointment_intent
        self.pending_action = snapshot.pending_action
        self.offered_slots = snapshot.offered_slots
        self.appointments_shown = snapshot.appointments_shown
        self.existing_appointments = snapshot.existing_appointments
        self.completed_action = snapshot.completed_action
        self.last_booked_appointment_id = snapshot.last_booked_appointment_id
        self.updated_at = _utcnow()

    # === Prompt summary ===

    @property
    def has_booking_context(self) -> bool:
        """True once any booking fact or action has been collected."""
        return bool(
            self.pending_action
            or self.patient.patient_id
            or self.patient.full_name
            or self.patient.phone
            or self.offered_slots
            or self.appointment_intent.appointment_type
            or self.appointment_intent.preferred_date
        )

    def summary(self) -> str:
        """Compact human-readable summary for the decision prompt."""
        lines = []

        patient = self.patient
        if patient.patient_id:
            lines.append(f"Patient identified: {patient.full_name or 'unknown name'} (id {patient.patient_id})")
        else:
            known = [
                f"{label}: {value}"
                for label, value in (
                    ("name", patient.full_name),
                    ("phone", patient.phone),
                    ("birthdate", patient.birthdate),
                    ("email", patient.email),
                )
                if value
            ]
            lines.append("Patient not identified yet" + (f" ({', '.join(known)})" if known else ""))
            if patient.is_new_patient:
                lines.append("Caller says they are a new patient")

        intent = self.appointment_intent
        wants = [
            f"{label}: {value}"
            for label, value in (
                ("type", intent.appointment_type),
                ("date", intent.preferred_date),
                ("time", intent.preferred_time),
                ("provider", intent.provider_name),
            )
            if value
        ]
        if wants:
            lines.append("Requested: " + ", ".join(wants))

        if self.pending_action:
            lines.append(f"Pending action: {self.pending_action.value}")

        if self.appointments_shown:
            if self.existing_appointments:
                shown = ", ".join(
                    f"{a.id} on {a.start:%Y-%m-%d %H:%M}" for a in self.existing_appointments
                )
                lines.append(f"Existing appointments shown: {shown}")
            else:
                lines.append("Existing appointments shown: none found")
        if intent.existing_appointment_id:
            lines.append(f"Appointment being changed: {intent.existing_appointment_id}")

        if self.offered_slots:
            offered = "; ".join(
                f"{i}. {s.start:%Y-%m-%d %H:%M} with {s.provider_name or s.provider_id}"
                for i, s in enumerate(self.offered_slots, 1)
            )
            lines.append(f"Slots offered: {offered}")

        if intent.selected_slot:
            slot = intent.selected_slot
            lines.append(
                f"Caller CONFIRMED slot: {slot.start:%Y-%m-%d %H:%M} with "
                f"{slot.provider_name or slot.provider_id} (operatory {slot.operatory_id})"
            )
        else:
            lines.append("No slot confirmed by the caller yet")

        if self.completed_action:
            lines.append(f"Completed: {self.completed_action}")

        return "\n".join(lines)

    # === Serialization ===

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "organization_id": self.organization_id,
            "patient": self.patient.to_dict(),
            "appointment_intent": self.appointment_intent.to_dict(),
            "pending_action": self.pending_action.value if self.pending_action else None,
            "offered_slots": [s.to_dict() for s in self.offered_slots],
            "appointments_shown": self.appointments_shown,
            "existing_appointments": [a.to_dict() for a in self.existing_appointments],
            "completed_action": self.completed_action,
            "last_booked_appointment_id": self.last_booked_appointment_id,
            "messages": self.messages,
            "max_messages": self.max_messages,
            "function_calls": [c.to_dict() for c in self.function_calls],
            "turn_count": self.turn_count,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ConversationState":
        pending = data.get("pending_action")
        return cls(
            session_id=data["session_id"],
            organization_id=data.get("organization_id", ""),
            patient=PatientInfo.from_dict(data.get("patient", {})),
            appointment_intent=AppointmentIntent.from_dict(data.get("appointment_intent", {})),
            pending_action=PendingAction(pending) if pending else None,
            offered_slots=[SlotCandidate.from_dict(s) for s in data.get("offered_slots", [])],
            appointments_shown=data.get("appointments_shown", False),
            existing_appointments=[
                Appointment.from_dict(a) for a in data.get("existing_appointments", [])
            ],
            completed_action=data.get("completed_action"),
            last_booked_appointment_id=data.get("last_booked_appointment_id"),
            messages=list(data.get("messages", [])),
            max_messages=data.get("max_messages", 40),
            function_calls=[
                FunctionCallRecord.from_dict(c) for c in data.get("function_calls", [])
            ],
            turn_count=data.get("turn_count", 0),
            created_at=(
                datetime.fromisoformat(data["created_at"]) if data.get("created_at") else _utcnow()
            ),
            updated_at=(
                datetime.fromisoformat(data["updated_at"]) if data.get("updated_at") else _utcnow()
            ),
        )

    def to_json(self) -> str:
        """Serialize to JSON string for Redis."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, data: str) -> "ConversationState":
        """Deserialize from JSON string."""
        return cls.from_dict(json.loads(data))
