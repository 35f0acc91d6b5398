"""
Router Types for the greeting agent

RouteResult is what the MessageRouter returns for one caller message.
It is built from the route_message tool input and never raises on a
malformed one.
"""

from dataclasses import dataclass, field
from typing import Optional

DOMAINS = ("info", "booking", "greeting", "goodbye", "handoff", "out_of_scope", "unclear")
BOOKING_INTENTS = ("book", "reschedule", "cancel", "check")


@dataclass
class RouteResult:
    """
    Result from the message router.

    Attributes:
        domain: One of DOMAINS
        confidence: 0.0 to 1.0. Below the configured threshold the router
            asks the fallback model again.
        sub_intent: For booking: one of BOOKING_INTENTS, or provide_info /
            select_option while a booking is underway
        info_topic: For info: hours, location, phone, services, other
        is_garbled: A name or number could not be made out; the caller
            should be asked to repeat
        entities: Volunteered fragments such as patient_name, phone, date,
            time, appointment_type
    """

    domain: str
    confidence: float
    sub_intent: Optional[str] = None
    info_topic: Optional[str] = None
    is_garbled: bool = False
    entities: dict = field(default_factory=dict)
    processing_time_ms: float = 0.0

    @classmethod
    def unclear(cls) -> "RouteResult":
        return cls(domain="unclear", confidence=0.0)

    @classmethod
    def from_tool_input(cls, tool_input: dict) -> "RouteResult":
        """Build a result from route_message arguments, coercing bad values."""
        try:
            confidence = min(max(float(tool_input.get("confidence", 0.0)), 0.0), 1.0)
        except (TypeError, ValueError):
            confidence = 0.0

        domain = tool_input.get("domain")
        if domain not in DOMAINS:
            domain = "unclear"

        entities = tool_input.get("entities") or {}
        return cls(
            domain=domain,
            confidence=confidence,
            sub_intent=tool_input.get("sub_intent"),
            info_topic=tool_input.get("info_topic"),
            is_garbled=bool(tool_input.get("is_garbled", False)),
            entities=entities if isinstance(entities, dict) else {},
        )

    @property
    def is_booking(self) -> bool:
        return self.domain == "booking"

    @property
    def is_info(self) -> bool:
        return self.domain == "info"

    @property
    def booking_intent(self) -> Optional[str]:
        """The booking operation the caller stated, if any."""
        return self.sub_intent if self.sub_intent in BOOKING_INTENTS else None
