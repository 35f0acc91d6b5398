"""
Dispatcher - entry point for one caller turn.

Flow:
1. Take the session's turn lock (turns within a session never interleave)
2. Load the tenant's agent configuration (cached)
3. Greeting agent answers office questions directly or hands off
4. On handoff, the booking orchestrator runs the turn against the
   session's ConversationState
5. Persist the state and return the reply
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

from app.config import settings
from app.core.agent.agents.greeting import GreetingAgent
from app.core.agent.dispatch_table import DispatchConfigurationError, get_dispatch_table
from app.core.agent.orchestrator import BookingOrchestrator
from app.core.agent.resolver import ParameterResolver
from app.core.agent.tenant_config import TenantConfigCache
from app.core.agent.transport import get_transport
from app.core.intelligence.session.manager import ConversationStateStore, get_state_store
from app.core.intelligence.session.models import ConversationState
from app.core.intelligence.slots.extractor import ParameterExtractor
from app.core.scheduling.backend import BookingBackend
from app.core.scheduling.booking_client import HttpBookingBackend
from app.core.scheduling.memory_backend import InMemoryBookingBackend
from app.core.scheduling.operations import BookingExecutor

logger = logging.getLogger(__name__)

FALLBACK_REPLY = "I'm having trouble with this. Let me get a human to help you."


def create_booking_backend() -> BookingBackend:
    """Build the booking backend selected by settings.booking_backend."""
    match settings.booking_backend:
        case "memory":
            logger.info("Using in-memory booking backend with demo data")
            return InMemoryBookingBackend(demo_data=True)
        case _:
            return HttpBookingBackend()


@dataclass
class DispatchResponse:
    """Response for one caller turn. Maps to the ChatResponse fields."""

    message: str
    session_id: str
    phase: str
    handled_by: str  # greeting, orchestrator or error
    pending_action: Optional[str] = None
    selected_slot: Optional[dict] = None
    appointment_id: Optional[str] = None
    handoff: bool = False
    processing_time_ms: Optional[float] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        result = {
            "message": self.message,
            "session_id": self.session_id,
            "phase": self.phase,
            "handled_by": self.handled_by,
            "handoff": self.handoff,
        }
        if self.pending_action:
            result["pending_action"] = self.pending_action
        if self.selected_slot:
            result["selected_slot"] = self.selected_slot
        if self.appointment_id:
            result["appointment_id"] = self.appointment_id
        if self.processing_time_ms is not None:
            result["processing_time_ms"] = self.processing_time_ms
        return result


class Dispatcher:
    """
    Runs caller turns for every tenant and session.

    Components are created lazily so that importing the module needs
    neither Redis nor an API key.
    """

    def __init__(
        self,
        backend: Optional[BookingBackend] = None,
        store: Optional[ConversationStateStore] = None,
        greeting: Optional[GreetingAgent] = None,
        orchestrator: Optional[BookingOrchestrator] = None,
        config_cache: Optional[TenantConfigCache] = None,
    ):
        self._backend = backend
        self._store = store
        self._greeting = greeting
        self._orchestrator = orchestrator
        self._config_cache = config_cache

    # === Lazy Initialization ===

    def _get_backend(self) -> BookingBackend:
        if self._backend is None:
            self._backend = create_booking_backend()
        return self._backend

    def _get_store(self) -> ConversationStateStore:
        if self._store is None:
            self._store = get_state_store()
        return self._store

    def _get_greeting(self) -> GreetingAgent:
        if self._greeting is None:
            self._greeting = GreetingAgent()
        return self._greeting

    def _get_orchestrator(self) -> BookingOrchestrator:
        if self._orchestrator is None:
            backend = self._get_backend()
            self._orchestrator = BookingOrchestrator(
                table=get_dispatch_table(),
                resolver=ParameterResolver(ParameterExtractor(), backend),
                executor=BookingExecutor(backend),
            )
        return self._orchestrator

    def _get_config_cache(self) -> TenantConfigCache:
        if self._config_cache is None:
            self._config_cache = TenantConfigCache(self._get_backend())
        return self._config_cache

    # === Main Processing ===

    async def process(
        self,
        organization_id: str,
        session_id: str,
        message: str,
        history: Optional[list[dict]] = None,
        transport: Optional[str] = None,
    ) -> DispatchResponse:
        """
        Process one caller message.

        Args:
            organization_id: Tenant identifier
            session_id: Session/call identifier
            message: Caller's text
            history: Earlier turns supplied by the transport, oldest first
            transport: Channel name (voice, sms, whatsapp, web)

        Returns:
            DispatchResponse with the reply and turn metadata
        """
        start_time = time.time()
        caps = get_transport(transport)
        store = self._get_store()

        async with store.lock(organization_id, session_id):
            try:
                config = await self._get_config_cache().get(organization_id)
                state = await store.peek(organization_id, session_id)
                is_first_turn = state is None and not history

                outcome = await self._get_greeting().handle(
                    message,
                    is_first_turn=is_first_turn,
                    config=config,
                    state=state,
                    transport=caps,
                )

                if not outcome.handoff:
                    # Direct replies never create conversation state
                    if state is not None:
                        state.add_message("user", message)
                        state.add_message("assistant", outcome.reply)
                        await store.save(state)
                    return self._build_response(
                        session_id=session_id,
                        message=outcome.reply,
                        phase="idle",
                        handled_by="greeting",
                        state=state,
                        start_time=start_time,
                    )

                if state is None:
                    state = await store.get(organization_id, session_id)
                    self._seed_history(state, history)

                result = await self._get_orchestrator().run_turn(
                    state,
                    message,
                    config,
                    transport=caps,
                    intent_hint=outcome.intent,
                    handoff_facts=outcome.facts,
                    handoff_note=outcome.context_summary,
                )
                await store.save(state)

                return self._build_response(
                    session_id=session_id,
                    message=result.reply,
                    phase=result.phase.value,
                    handled_by="orchestrator",
                    state=state,
                    start_time=start_time,
                    handoff=result.handoff,
                )

            except DispatchConfigurationError as e:
                logger.critical(f"Function catalog misconfigured: {e}")
                return self._fallback(session_id, start_time)

            except Exception as e:
                logger.exception(f"Error processing message: {e}")
                return self._fallback(session_id, start_time)

    @staticmethod
    def _seed_history(state: ConversationState, history: Optional[list[dict]]) -> None:
        """Carry transport-supplied turns into a fresh state."""
        if state.messages or not history:
            return
        for item in history:
            role = item.get("role")
            content = item.get("content")
            if role in ("user", "assistant") and content:
                state.add_message(role, content)

    def _build_response(
        self,
        session_id: str,
        message: str,
        phase: str,
        handled_by: str,
        state: Optional[ConversationState],
        start_time: float,
        handoff: bool = False,
    ) -> DispatchResponse:
        pending_action = None
        selected_slot = None
        appointment_id = None
        if state is not None:
            if state.pending_action:
                pending_action = state.pending_action.value
            slot = state.appointment_intent.selected_slot
            selected_slot = slot.to_dict() if slot else None
            appointment_id = state.last_booked_appointment_id

        return DispatchResponse(
            message=message,
            session_id=session_id,
            phase=phase,
            handled_by=handled_by,
            pending_action=pending_action,
            selected_slot=selected_slot,
            appointment_id=appointment_id,
            handoff=handoff,
            processing_time_ms=(time.time() - start_time) * 1000,
        )

    @staticmethod
    def _fallback(session_id: str, start_time: float) -> DispatchResponse:
        return DispatchResponse(
            message=FALLBACK_REPLY,
            session_id=session_id,
            phase="idle",
            handled_by="error",
            handoff=True,
            processing_time_ms=(time.time() - start_time) * 1000,
        )

    # === Session Management ===

    async def get_session(self, organization_id: str, session_id: str) -> Optional[ConversationState]:
        """Get a session's state without creating it."""
        return await self._get_store().peek(organization_id, session_id)

    async def end_session(self, organization_id: str, session_id: str) -> bool:
        """
        Discard a session's state.

        Returns:
            True if the session had state
        """
        return await self._get_store().delete(organization_id, session_id)

    def invalidate_tenant_config(self, organization_id: str) -> bool:
        """Drop a tenant's cached agent configuration."""
        return self._get_config_cache().invalidate(organization_id)

    async def close(self) -> None:
        """Release backend connections."""
        if self._backend is not None:
            await self._backend.close()


# Singleton
_dispatcher: Optional[Dispatcher] = None


def get_dispatcher() -> Dispatcher:
    """Get singleton Dispatcher."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = Dispatcher()
    return _dispatcher
