"""
Greeting / front agent.

Answers stateless office questions (hours, location, phone) straight from
the tenant's AgentConfig and hands anything involving a booking, lookup or
change to the orchestrator. Re-prompts instead of guessing when the
caller's intent or identity fragments are unclear.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from app.config import settings
from app.core.agent.router import MessageRouter, get_router
from app.core.agent.router_types import RouteResult
from app.core.agent.tenant_config import AgentConfig
from app.core.agent.transport import TransportCapabilities, WEB
from app.core.intelligence.session.models import ConversationState
from app.core.intelligence.slots.heuristics import extract_facts, facts_from_entities
from app.core.intelligence.slots.types import UtteranceFacts

logger = logging.getLogger(__name__)


@dataclass
class GreetingOutcome:
    """Either a direct reply or a handoff to the orchestrator."""

    reply: Optional[str] = None
    handoff: bool = False
    intent: Optional[str] = None
    facts: UtteranceFacts = field(default_factory=UtteranceFacts)
    context_summary: str = ""
    route: Optional[RouteResult] = None

    @classmethod
    def direct(cls, reply: str, route: Optional[RouteResult] = None) -> "GreetingOutcome":
        return cls(reply=reply, route=route)


class GreetingAgent:
    """
    Thin conversational front.

    Usage:
        agent = GreetingAgent()
        outcome = await agent.handle("what are your hours", True, config)
        if outcome.handoff:
            ...  # run the orchestrator
    """

    def __init__(self, router: Optional[MessageRouter] = None):
        self._router = router

    def _get_router(self) -> MessageRouter:
        if self._router is None:
            self._router = get_router()
        return self._router

    async def handle(
        self,
        utterance: str,
        is_first_turn: bool,
        config: AgentConfig,
        state: Optional[ConversationState] = None,
        transport: TransportCapabilities = WEB,
        today: Optional[date] = None,
    ) -> GreetingOutcome:
        """
        Handle one utterance.

        Args:
            utterance: Caller's text
            is_first_turn: No earlier turns in this session
            config: Tenant agent configuration
            state: Existing conversation state, None when there is none
            transport: Channel capabilities
            today: Reference date for heuristics

        Returns:
            GreetingOutcome with a reply or handoff=True
        """
        facts = extract_facts(utterance, today)

        # Mid-flow replies ("the 9:30 one", "yes") belong to the orchestrator
        if state is not None and state.has_booking_context:
            return self._handoff(facts, None)

        route = await self._get_router().route(utterance, self._context(state))
        intent = route.booking_intent or (facts.intent.value if facts.intent else None)

        match route.domain:
            case "info":
                return GreetingOutcome.direct(self._answer(route.info_topic, config, transport), route)
            case "greeting" if intent is None:
                return GreetingOutcome.direct(
                    config.greeting_text() if is_first_turn else "Hi again! How can I help?",
                    route,
                )
            case "goodbye":
                return GreetingOutcome.direct("Thanks for contacting us. Have a great day!", route)
            case "handoff":
                return GreetingOutcome.direct(
                    "Of course. Let me get someone from the front desk to help you.", route
                )
            case "out_of_scope" if intent is None:
                return GreetingOutcome.direct(
                    f"I can help with appointments and questions about {config.office_name}. "
                    "What can I do for you?",
                    route,
                )

        if route.is_garbled:
            logger.info("Greeting: garbled input, re-prompting")
            return GreetingOutcome.direct(
                "Sorry, I didn't quite catch that. Could you say it again?", route
            )

        if intent is None:
            if route.is_booking and route.confidence >= settings.router_confidence_threshold:
                return GreetingOutcome.direct(
                    "Happy to help. Are you looking to book a new appointment, "
                    "or change or cancel an existing one?",
                    route,
                )
            return GreetingOutcome.direct(
                "Sorry, I'm not sure I understood. Would you like to book, "
                "reschedule or cancel an appointment?",
                route,
            )

        return self._handoff(facts, route, intent)

    def _handoff(
        self,
        facts: UtteranceFacts,
        route: Optional[RouteResult],
        intent: Optional[str] = None,
    ) -> GreetingOutcome:
        fragments = [f"intent: {intent}"] if intent else []
        if route:
            fragments += [f"{k}: {v}" for k, v in route.entities.items() if v]
            # Regex facts win; the router fills what they missed
            facts = facts.fill_missing(facts_from_entities(route.entities))
        summary = "; ".join(fragments)
        logger.info(f"Greeting: handing off to orchestrator (intent={intent})")
        return GreetingOutcome(
            handoff=True,
            intent=intent,
            facts=facts,
            context_summary=summary,
            route=route,
        )

    @staticmethod
    def _answer(topic: Optional[str], config: AgentConfig, transport: TransportCapabilities) -> str:
        match topic:
            case "hours":
                answer = f"We're open {config.hours}."
            case "location" if config.location:
                answer = f"We're located at {config.location}."
            case "phone" if config.phone:
                answer = f"You can reach {config.office_name} at {config.phone}."
            case _:
                answer = "I don't have that information handy, but the front desk can help."
        return transport.fit(f"{answer} Would you like to schedule an appointment?")

    @staticmethod
    def _context(state: Optional[ConversationState]) -> str:
        if state is None or not state.messages:
            return ""
        return "\n".join(
            f"{'Caller' if m['role'] == 'user' else 'Receptionist'}: {m['content']}"
            for m in state.recent_turns(4)
        )
