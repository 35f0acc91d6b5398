"""
Reply templates for the booking orchestrator.

Deterministic wording for everything safety-relevant: confirmations,
slot offers, clarifying questions and error recovery. Confirmations are
only ever built from an appointment the backend returned.

Slot lists are spoken as a sentence on audio transports and rendered as a
numbered list where rich formatting is available.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from app.core.scheduling.types import Appointment, SlotCandidate

if TYPE_CHECKING:
    from app.core.agent.transport import TransportCapabilities


def format_day(value: datetime) -> str:
    """Monday, March 2"""
    return f"{value:%A, %B} {value.day}"


def format_time(value: datetime) -> str:
    """9:30 AM / 2 PM"""
    hour = value.hour % 12 or 12
    suffix = "AM" if value.hour < 12 else "PM"
    if value.minute:
        return f"{hour}:{value.minute:02d} {suffix}"
    return f"{hour} {suffix}"


def _join(items: list[str]) -> str:
    if len(items) <= 1:
        return "".join(items)
    return ", ".join(items[:-1]) + f" or {items[-1]}"


class ReplyBuilder:
    """Builds caller-facing replies for one transport."""

    def __init__(self, transport: "TransportCapabilities"):
        self.transport = transport

    def _finish(self, text: str) -> str:
        return self.transport.fit(text)

    # === Slots ===

    def describe_slot(self, slot: SlotCandidate, include_day: bool = True) -> str:
        when = format_time(slot.start)
        if include_day:
            when = f"{format_day(slot.start)} at {when}"
        if slot.provider_name:
            when += f" with {slot.provider_name}"
        return when

    def offer_slots(self, slots: list[SlotCandidate], intro: Optional[str] = None) -> str:
        """Present offered slots and ask the caller to pick one.

        Args:
            slots: Slots being offered (already bounded)
            intro: Optional lead-in sentence

        Returns:
            Reply text
        """
        if not slots:
            return self.no_availability()

        same_day = len({s.start.date() for s in slots}) == 1
        if self.transport.supports_rich_formatting:
            lines = [intro or (
                f"Here's what I have on {format_day(slots[0].start)}:" if same_day
                else "Here's what I have available:"
            )]
            for i, slot in enumerate(slots, 1):
                lines.append(f"{i}. {self.describe_slot(slot, include_day=not same_day)}")
            lines.append("Which one works for you?")
            return self._finish("\n".join(lines))

        options = [self.describe_slot(s, include_day=not same_day) for s in slots]
        lead = intro or (
            f"On {format_day(slots[0].start)} I have" if same_day else "I have"
        )
        return self._finish(f"{lead} {_join(options)}. Which one works best for you?")

    def no_availability(self, day: Optional[datetime] = None) -> str:
        when = f" on {format_day(day)}" if day else " for that time"
        return self._finish(
            f"I'm sorry, there's no availability{when}. "
            "Would you like to try a different day or time?"
        )

    def slot_taken(self, slots: list[SlotCandidate]) -> str:
        """The confirmed slot was booked by someone else in the meantime."""
        intro = "I'm sorry, that time was just taken."
        if not slots:
            return self._finish(f"{intro} Would you like to try a different day?")
        if self.transport.supports_rich_formatting:
            return self.offer_slots(slots, intro=f"{intro} Here's what's still open:")
        return self.offer_slots(slots, intro=f"{intro} I still have")

    def confirm_which_slot(self, slots: list[SlotCandidate]) -> str:
        """Ask the caller to pick one of the offered slots before committing."""
        if not slots:
            return self._finish("Let me first check what times are available. What day works for you?")
        return self.offer_slots(
            slots,
            intro="Before I book anything, please tell me which time you'd like:"
            if self.transport.supports_rich_formatting
            else "Before I book anything, which would you like:",
        )

    # === Appointments ===

    def booking_confirmed(
        self,
        appointment: Appointment,
        provider_name: Optional[str] = None,
        patient_name: Optional[str] = None,
    ) -> str:
        """Confirmation for a created appointment.

        Args:
            appointment: Appointment returned by the backend
            provider_name: Provider display name
            patient_name: Patient display name

        Returns:
            Confirmation text
        """
        name_part = f", {patient_name}" if patient_name else ""
        what = appointment.appointment_type.replace("_", " ") if appointment.appointment_type else "appointment"
        with_part = f" with {provider_name}" if provider_name else ""
        return self._finish(
            f"You're all set{name_part}! Your {what} is booked for "
            f"{format_day(appointment.start)} at {format_time(appointment.start)}{with_part}. "
            "Is there anything else I can help you with?"
        )

    def reschedule_confirmed(self, appointment: Appointment, provider_name: Optional[str] = None) -> str:
        with_part = f" with {provider_name}" if provider_name else ""
        return self._finish(
            f"Done! Your appointment has been moved to {format_day(appointment.start)} at "
            f"{format_time(appointment.start)}{with_part}. Anything else I can help with?"
        )

    def cancellation_confirmed(self, appointment: Appointment) -> str:
        return self._finish(
            f"Your appointment on {format_day(appointment.start)} at "
            f"{format_time(appointment.start)} has been cancelled. Anything else I can help with?"
        )

    def show_appointments(self, appointments: list[Appointment], action: str = "reschedule") -> str:
        """List the caller's existing appointments before changing one."""
        if not appointments:
            return self._finish(
                "I don't see any upcoming appointments on your record. "
                "Would you like to book a new one?"
            )
        described = [
            f"{format_day(a.start)} at {format_time(a.start)}"
            + (f" ({a.appointment_type.replace('_', ' ')})" if a.appointment_type else "")
            for a in appointments
        ]
        if len(appointments) == 1:
            follow_up = (
                "What day would you like to move it to?" if action == "reschedule"
                else "Would you like me to cancel it?"
            )
            return self._finish(f"I see your appointment on {described[0]}. {follow_up}")
        if self.transport.supports_rich_formatting:
            lines = ["I see these upcoming appointments:"]
            lines += [f"{i}. {d}" for i, d in enumerate(described, 1)]
            lines.append(f"Which one would you like to {action}?")
            return self._finish("\n".join(lines))
        return self._finish(
            f"I see appointments on {_join(described)}. Which one would you like to {action}?"
        )

    # === Clarifying ===

    def ask_for(self, labels: list[str]) -> str:
        """Direct question naming what is still needed."""
        unique = list(dict.fromkeys(labels))
        if not unique:
            return self._finish("Could you tell me a bit more about what you need?")
        if len(unique) == 1:
            return self._finish(f"Could you tell me {unique[0]}?")
        return self._finish(
            "I just need a couple more details: " + ", ".join(unique[:-1]) + f" and {unique[-1]}."
        )

    def ask_identity(self) -> str:
        return self._finish("Could I have your full name or the phone number on your file?")

    def ask_name_or_phone(self) -> str:
        return self._finish(
            "I couldn't find your record. Could you give me the full name "
            "or the phone number the appointment was booked under?"
        )

    def offer_create_patient(self, full_name: Optional[str] = None) -> str:
        who = f" for {full_name}" if full_name else ""
        return self._finish(
            f"I couldn't find an existing record{who}. I can set you up as a new patient. "
            "Could you confirm your date of birth and the best phone number to reach you?"
        )

    def which_one(self, entity: str) -> str:
        match entity:
            case "provider":
                return self._finish("I couldn't find that dentist. Which provider would you like to see?")
            case "operatory":
                return self._finish("That room isn't available. Shall I book any available room instead?")
            case "appointment":
                return self._finish("I couldn't find that appointment. Which appointment do you mean?")
            case _:
                return self._finish("I couldn't find that. Could you say it another way?")

    def several_patients(self) -> str:
        return self._finish(
            "I found more than one patient with that name. Could you give me your date of birth or phone number?"
        )

    # === Recovery ===

    def try_again(self) -> str:
        return self._finish(
            "I'm sorry, I'm having trouble reaching our scheduling system right now. "
            "Could you please try again in a moment?"
        )

    def handoff(self) -> str:
        return self._finish("I'm having trouble with this. Let me get a human to help you.")
