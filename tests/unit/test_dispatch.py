"""Tests for the per-turn dispatcher."""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from app.config import settings
from app.core.agent.agents.greeting import GreetingAgent
from app.core.agent.dispatch import FALLBACK_REPLY, Dispatcher, create_booking_backend
from app.core.agent.dispatch_table import (
    DEFAULT_CATALOG_PATH,
    DispatchConfigurationError,
    DispatchTable,
)
from app.core.agent.orchestrator import BookingOrchestrator, TurnPhase, TurnResult
from app.core.agent.resolver import ParameterResolver
from app.core.agent.router_types import RouteResult
from app.core.intelligence.session.manager import ConversationStateStore
from app.core.intelligence.slots.types import ExtractionResult
from app.core.scheduling.booking_client import HttpBookingBackend
from app.core.scheduling.memory_backend import InMemoryBookingBackend
from app.core.scheduling.operations import BookingExecutor

from tests.fakes import ORG, clock, message, scripted_claude, seeded_backend, tool_use


@pytest.fixture(autouse=True)
def no_redis():
    """Run the state store on its in-memory fallback."""
    with patch("app.core.intelligence.session.manager.get_redis", return_value=None):
        yield


@pytest.fixture
def backend():
    backend = seeded_backend()
    backend.set_agent_config(ORG, {"office_name": "Bright Smiles Dental"})
    return backend


@pytest.fixture
def router():
    mock = MagicMock()
    mock.route = AsyncMock()
    return mock


def _orchestrator(backend, claude) -> BookingOrchestrator:
    extractor = AsyncMock()
    extractor.extract = AsyncMock(return_value=ExtractionResult())
    return BookingOrchestrator(
        table=DispatchTable.from_file(DEFAULT_CATALOG_PATH),
        resolver=ParameterResolver(extractor, backend),
        executor=BookingExecutor(backend, clock=clock, retry_delay=0),
        claude_client=claude,
        notifier=MagicMock(),
        clock=clock,
    )


def _dispatcher(backend, router, orchestrator) -> Dispatcher:
    return Dispatcher(
        backend=backend,
        store=ConversationStateStore(),
        greeting=GreetingAgent(router=router),
        orchestrator=orchestrator,
    )


class TestDispatcher:
    """Test greeting/orchestrator routing and state handling."""

    @pytest.mark.asyncio
    async def test_info_question_creates_no_state(self, backend, router):
        router.route.return_value = RouteResult(domain="info", confidence=0.95, info_topic="hours")
        orchestrator = MagicMock()
        orchestrator.run_turn = AsyncMock()
        dispatcher = _dispatcher(backend, router, orchestrator)

        response = await dispatcher.process(ORG, "call-1", "What are your hours?")

        assert response.handled_by == "greeting"
        assert response.phase == "idle"
        assert response.message.startswith("We're open")
        assert await dispatcher.get_session(ORG, "call-1") is None
        orchestrator.run_turn.assert_not_called()

    @pytest.mark.asyncio
    async def test_booking_over_two_turns(self, backend, router):
        router.route.return_value = RouteResult(domain="booking", confidence=0.9, sub_intent="book")
        claude = scripted_claude(
            message(tool_use("search_patients", {"first_name": "Jane", "last_name": "Doe"})),
            message(tool_use("find_available_slots", {})),
            message(tool_use("create_appointment", {})),
        )
        dispatcher = _dispatcher(backend, router, _orchestrator(backend, claude))

        first = await dispatcher.process(
            ORG, "call-1", "I'd like to book a cleaning for Jane Doe on Monday morning"
        )

        assert first.handled_by == "orchestrator"
        assert first.phase == TurnPhase.RESPONDING.value
        assert first.pending_action == "create"
        assert "appointment_id" not in first.to_dict()

        second = await dispatcher.process(ORG, "call-1", "The 9:30 one please", transport="voice")

        assert second.message.startswith("You're all set, Jane!")
        assert second.appointment_id is not None
        assert second.pending_action is None
        # mid-flow replies skip the router
        assert router.route.await_count == 1

        state = await dispatcher.get_session(ORG, "call-1")
        assert state.last_booked_appointment_id == second.appointment_id
        assert len(state.messages) == 4

    @pytest.mark.asyncio
    async def test_router_entities_reach_state(self, backend, router):
        """Test that details only the router understood are not lost at handoff."""
        router.route.return_value = RouteResult(
            domain="booking",
            confidence=0.9,
            sub_intent="book",
            entities={
                "patient_name": "Jane Doe",
                "date": "2026-03-02",
                "time": "morning",
                "appointment_type": "cleaning",
            },
        )
        claude = scripted_claude(
            message(tool_use("search_patients", {})),
            message(tool_use("find_available_slots", {})),
        )
        dispatcher = _dispatcher(backend, router, _orchestrator(backend, claude))

        response = await dispatcher.process(
            ORG, "call-1", "yeah can you book me in, jane doe, scale and polish early next week"
        )

        assert response.handled_by == "orchestrator"
        state = await dispatcher.get_session(ORG, "call-1")
        assert state.patient.patient_id == "pat-jane"
        assert state.appointment_intent.preferred_date == "2026-03-02"
        assert state.appointment_intent.preferred_time == "morning"
        assert state.appointment_intent.appointment_type == "cleaning"
        assert state.offered_slots
        system = claude.create_message.call_args_list[0].kwargs["system"]
        assert "patient_name: Jane Doe" in system

    @pytest.mark.asyncio
    async def test_history_seeds_new_state(self, backend, router):
        router.route.return_value = RouteResult(domain="booking", confidence=0.9, sub_intent="cancel")
        orchestrator = MagicMock()
        orchestrator.run_turn = AsyncMock(
            return_value=TurnResult(reply="Could I have your name?", phase=TurnPhase.CLARIFYING)
        )
        dispatcher = _dispatcher(backend, router, orchestrator)

        response = await dispatcher.process(
            ORG,
            "call-1",
            "I need to cancel",
            history=[
                {"role": "user", "content": "hi"},
                {"role": "assistant", "content": "Hello! How can I help?"},
                {"role": "system", "content": "ignored"},
            ],
        )

        assert response.phase == "clarifying"
        assert orchestrator.run_turn.call_args.kwargs["intent_hint"] == "cancel"
        state = await dispatcher.get_session(ORG, "call-1")
        assert [m["content"] for m in state.messages] == ["hi", "Hello! How can I help?"]

    @pytest.mark.asyncio
    async def test_history_means_not_first_turn(self, backend, router):
        router.route.return_value = RouteResult(domain="greeting", confidence=0.99)
        dispatcher = _dispatcher(backend, router, MagicMock())

        first = await dispatcher.process(ORG, "call-1", "hello")
        again = await dispatcher.process(
            ORG, "call-2", "hello", history=[{"role": "user", "content": "hi"}]
        )

        assert first.message == "Hello! Thanks for contacting Bright Smiles Dental. How can I help you today?"
        assert again.message == "Hi again! How can I help?"

    @pytest.mark.asyncio
    async def test_unexpected_error_falls_back(self, backend, router):
        router.route.return_value = RouteResult(domain="booking", confidence=0.9, sub_intent="book")
        orchestrator = MagicMock()
        orchestrator.run_turn = AsyncMock(side_effect=RuntimeError("boom"))
        dispatcher = _dispatcher(backend, router, orchestrator)

        response = await dispatcher.process(ORG, "call-1", "book me in")

        assert response.message == FALLBACK_REPLY
        assert response.handled_by == "error"
        assert response.handoff is True

    @pytest.mark.asyncio
    async def test_catalog_error_falls_back(self, backend, router):
        router.route.return_value = RouteResult(domain="booking", confidence=0.9, sub_intent="book")
        orchestrator = MagicMock()
        orchestrator.run_turn = AsyncMock(side_effect=DispatchConfigurationError("no create_appointment"))
        dispatcher = _dispatcher(backend, router, orchestrator)

        response = await dispatcher.process(ORG, "call-1", "book me in")

        assert response.message == FALLBACK_REPLY

    @pytest.mark.asyncio
    async def test_end_session(self, backend, router):
        router.route.return_value = RouteResult(domain="booking", confidence=0.9, sub_intent="book")
        orchestrator = MagicMock()
        orchestrator.run_turn = AsyncMock(
            return_value=TurnResult(reply="What day?", phase=TurnPhase.CLARIFYING)
        )
        dispatcher = _dispatcher(backend, router, orchestrator)
        await dispatcher.process(ORG, "call-1", "book me in")

        assert await dispatcher.end_session(ORG, "call-1") is True
        assert await dispatcher.end_session(ORG, "call-1") is False
        assert await dispatcher.get_session(ORG, "call-1") is None

    @pytest.mark.asyncio
    async def test_invalidate_tenant_config(self, backend, router):
        router.route.return_value = RouteResult(domain="greeting", confidence=0.99)
        dispatcher = _dispatcher(backend, router, MagicMock())

        assert dispatcher.invalidate_tenant_config(ORG) is False
        await dispatcher.process(ORG, "call-1", "hello")
        backend.set_agent_config(ORG, {"office_name": "Renamed Dental"})

        assert dispatcher.invalidate_tenant_config(ORG) is True
        response = await dispatcher.process(ORG, "call-2", "hello")
        assert "Renamed Dental" in response.message


class TestCreateBookingBackend:
    """Test backend selection from settings."""

    def test_memory(self):
        with patch.object(settings, "booking_backend", "memory"):
            assert isinstance(create_booking_backend(), InMemoryBookingBackend)

    def test_http(self):
        with patch.object(settings, "booking_backend", "http"):
            assert isinstance(create_booking_backend(), HttpBookingBackend)
