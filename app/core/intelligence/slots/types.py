"""Slot types for heuristic and LLM extraction."""

from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Optional


class AppointmentType(str, Enum):
    """Types of dental appointments."""

    CLEANING = "cleaning"
    CHECKUP = "checkup"
    FILLING = "filling"
    CROWN = "crown"
    ROOT_CANAL = "root_canal"
    EXTRACTION = "extraction"
    WHITENING = "whitening"
    EMERGENCY = "emergency"
    CONSULTATION = "consultation"
    OTHER = "other"


class CallerIntent(str, Enum):
    """Booking intent stated in an utterance."""

    BOOK = "book"
    RESCHEDULE = "reschedule"
    CANCEL = "cancel"
    CHECK = "check"


@dataclass
class UtteranceFacts:
    """Facts picked out of a single utterance by the regex heuristics."""

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    birthdate: Optional[str] = None       # YYYY-MM-DD
    email: Optional[str] = None
    appointment_type: Optional[AppointmentType] = None
    preferred_date: Optional[str] = None  # YYYY-MM-DD
    preferred_time: Optional[str] = None  # morning/afternoon/evening or HH:MM
    intent: Optional[CallerIntent] = None
    is_new_patient: Optional[bool] = None
    wants_reidentify: bool = False

    def has_any(self) -> bool:
        """Check if anything was found."""
        return any([
            self.first_name,
            self.last_name,
            self.phone,
            self.birthdate,
            self.email,
            self.appointment_type,
            self.preferred_date,
            self.preferred_time,
            self.intent,
            self.is_new_patient is not None,
            self.wants_reidentify,
        ])

    def patient_update(self) -> dict:
        """Patient fields for ConversationState.merge (None = not stated)."""
        return {
            "first_name": self.first_name,
            "last_name": self.last_name,
            "phone": self.phone,
            "birthdate": self.birthdate,
            "email": self.email,
            "is_new_patient": self.is_new_patient,
        }

    def intent_update(self) -> dict:
        """Appointment intent fields for ConversationState.merge."""
        return {
            "appointment_type": self.appointment_type.value if self.appointment_type else None,
            "preferred_date": self.preferred_date,
            "preferred_time": self.preferred_time,
        }

    def fill_missing(self, other: "UtteranceFacts") -> "UtteranceFacts":
        """Copy of these facts with the gaps taken from another reading of the utterance."""
        merged = replace(self)
        for item in fields(self):
            if getattr(merged, item.name) is None:
                setattr(merged, item.name, getattr(other, item.name))
        return merged


@dataclass
class ExtractionResult:
    """
    Result of one bounded LLM extraction call.

    Attributes:
        values: Fields the conversation states, by parameter name
        not_stated: Fields the model reported as not stated
        failed: The call errored or returned unparseable output; every
            requested field is then treated as not stated
    """

    values: dict[str, Any] = field(default_factory=dict)
    not_stated: list[str] = field(default_factory=list)
    failed: bool = False
    raw_response: str = ""
    processing_time_ms: float = 0.0

    @classmethod
    def failure(cls, fields: list[str], raw_response: str = "") -> "ExtractionResult":
        return cls(values={}, not_stated=list(fields), failed=True, raw_response=raw_response)
