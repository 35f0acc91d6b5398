"""
Message Router for the greeting agent

Uses a single Claude tool_use call to classify what the caller wants:
a stateless office question, a booking/lookup/change, small talk, or a
human. It never writes a reply.
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Optional

from app.config import settings
from app.infra.claude import ClaudeClient, ClaudeClientError
from app.core.agent.router_types import BOOKING_INTENTS, DOMAINS, RouteResult

logger = logging.getLogger(__name__)

INFO_TOPICS = ("hours", "location", "phone", "services", "other")

ENTITY_FIELDS = {
    "patient_name": "Caller's or patient's full name as stated",
    "phone": "Phone number as stated",
    "date": "Requested date in ISO format YYYY-MM-DD",
    "time": "Requested time: morning, afternoon, evening or HH:MM",
    "appointment_type": (
        "Visit type (cleaning, checkup, filling, crown, root canal, "
        "extraction, whitening, emergency)"
    ),
}

# Forced tool_choice makes this the only shape the router can answer in
ROUTE_MESSAGE_TOOL = {
    "name": "route_message",
    "description": "Classify the caller's message for a dental office receptionist.",
    "input_schema": {
        "type": "object",
        "properties": {
            "domain": {"type": "string", "enum": list(DOMAINS)},
            "confidence": {"type": "number", "minimum": 0, "maximum": 1},
            "sub_intent": {
                "type": "string",
                "enum": [*BOOKING_INTENTS, "provide_info", "select_option", "question"],
            },
            "info_topic": {"type": "string", "enum": list(INFO_TOPICS)},
            "is_garbled": {
                "type": "boolean",
                "description": "The message, or a name or number in it, cannot be made out reliably",
            },
            "entities": {
                "type": "object",
                "properties": {
                    name: {"type": "string", "description": description}
                    for name, description in ENTITY_FIELDS.items()
                },
                "description": "Fragments the caller volunteered",
            },
        },
        "required": ["domain", "confidence"],
    },
}


def _build_router_system_prompt(session_context: str) -> str:
    """Build the router system prompt with injected date context."""
    today = datetime.now()
    tomorrow = today + timedelta(days=1)

    return f"""You are the intake router for a dental office's receptionist system.

Your ONLY job is to classify the caller's message and extract what they volunteered.
You do NOT write a response to the caller.

DOMAINS:
- info: A simple question about the office that needs no patient record - opening hours,
  address or directions, phone number, services offered.
- booking: The caller wants to BOOK, RESCHEDULE, CANCEL or CHECK an appointment, or is
  giving details for one (name, phone, date, time, picking an offered option).
- greeting: Only a hello with nothing else.
- goodbye: Ending the conversation.
- handoff: Explicitly asks for a real person or the front desk.
- out_of_scope: Unrelated to the dental office.
- unclear: You cannot tell what the caller wants.

Set is_garbled when the words (or a name or number) look like a transcription error.

ENTITY EXTRACTION:
Extract ONLY what is explicitly stated. Never guess.
- Dates: today = {today.strftime('%Y-%m-%d')} ({today.strftime('%A')}),
  "tomorrow" = {tomorrow.strftime('%Y-%m-%d')}
- If something is ambiguous, omit it.

CONVERSATION CONTEXT:
{session_context or "(first message)"}"""


class MessageRouter:
    """
    Classifies caller messages for the greeting agent.

    Uses a single Claude tool_use call with forced tool_choice to get
    guaranteed structured output.
    """

    _instance: Optional["MessageRouter"] = None

    def __init__(self, claude_client: Optional[ClaudeClient] = None):
        self._client = claude_client
        self._model = settings.greeting_model
        self._fallback_model = settings.claude_fallback_model
        self._confidence_threshold = settings.router_confidence_threshold

    @classmethod
    def get_instance(cls) -> "MessageRouter":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        cls._instance = None

    def _get_client(self) -> ClaudeClient:
        if self._client is None:
            self._client = ClaudeClient.get_instance()
        return self._client

    async def route(
        self,
        message: str,
        session_context: str = "",
    ) -> RouteResult:
        """
        Classify a caller message.

        Args:
            message: The caller's message
            session_context: Recent turns, condensed

        Returns:
            RouteResult; domain "unclear" when classification failed
        """
        start_time = time.time()

        result = await self._route_with_model(message, session_context, self._model)

        # Below the threshold the fallback model gets one try; keep whichever is surer
        if result.confidence < self._confidence_threshold:
            logger.info(
                f"Low confidence ({result.confidence:.2f}), retrying with fallback model"
            )
            retry = await self._route_with_model(message, session_context, self._fallback_model)
            if retry.confidence >= result.confidence:
                result = retry

        result.processing_time_ms = (time.time() - start_time) * 1000

        logger.info(
            f"Routed message to domain={result.domain}, "
            f"sub_intent={result.sub_intent}, "
            f"confidence={result.confidence:.2f}, "
            f"time={result.processing_time_ms:.0f}ms"
        )

        return result

    async def _route_with_model(
        self,
        message: str,
        session_context: str,
        model: str,
    ) -> RouteResult:
        client = self._get_client()
        try:
            response = await client.create_message(
                messages=[{"role": "user", "content": message}],
                system=_build_router_system_prompt(session_context),
                model=model,
                max_tokens=400,
                temperature=0.0,
                tools=[ROUTE_MESSAGE_TOOL],
                tool_choice={"type": "tool", "name": "route_message"},
            )
        except ClaudeClientError as e:
            logger.error(f"Router Claude call failed: {e}")
            return RouteResult.unclear()

        # With forced tool_choice the first tool_use block carries the answer
        for block in response.content or []:
            if getattr(block, "type", None) == "tool_use":
                return RouteResult.from_tool_input(block.input)

        logger.warning("No tool_use block in router response, using default")
        return RouteResult.unclear()


# Singleton accessor
def get_router() -> MessageRouter:
    """Get router singleton instance."""
    return MessageRouter.get_instance()
