"""Tests for the booking orchestrator turn loop."""

import pytest
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

from app.core.agent.dispatch_table import DEFAULT_CATALOG_PATH, DispatchTable
from app.core.agent.orchestrator import BookingOrchestrator, TurnPhase
from app.core.agent.resolver import ParameterResolver
from app.core.agent.tenant_config import AgentConfig
from app.core.agent.transport import VOICE
from app.core.intelligence.session.models import ConversationState, PendingAction
from app.core.intelligence.slots.types import ExtractionResult
from app.core.scheduling.backend import TransientBackendError
from app.core.scheduling.memory_backend import InMemoryBookingBackend
from app.core.scheduling.operations import BookingExecutor
from app.core.scheduling.types import Appointment, SlotCandidate
from app.infra.claude import ClaudeClientError

from tests.fakes import (
    MONDAY,
    ORG,
    book,
    clock,
    message,
    scripted_claude,
    seeded_backend,
    text_block,
    tool_use,
)


class FlakyBackend(InMemoryBookingBackend):
    """Backend whose every call times out."""

    async def call(self, organization_id, operation, params):
        self.calls.append((organization_id, operation, dict(params)))
        raise TransientBackendError("Booking API timed out", operation)


def _at(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, 2, hour, minute)


def _slot(hour: int, minute: int = 0, provider_id: str = "prov-1") -> SlotCandidate:
    names = {"prov-1": "Dr. Smith", "prov-2": "Dr. Patel"}
    operatories = {"prov-1": "op-1", "prov-2": "op-2"}
    return SlotCandidate(
        start=_at(hour, minute),
        provider_id=provider_id,
        operatory_id=operatories[provider_id],
        provider_name=names[provider_id],
    )


def _operations(backend: InMemoryBookingBackend) -> list[str]:
    return [operation for _, operation, _ in backend.calls]


@pytest.fixture
def table():
    return DispatchTable.from_file(DEFAULT_CATALOG_PATH)


@pytest.fixture
def backend():
    return seeded_backend()


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def config():
    return AgentConfig(office_name="Bright Smiles Dental")


@pytest.fixture
def state():
    return ConversationState(session_id="call-1", organization_id=ORG)


def _orchestrator(table, backend, claude, notifier, **kwargs) -> BookingOrchestrator:
    extractor = AsyncMock()
    extractor.extract = AsyncMock(return_value=ExtractionResult())
    return BookingOrchestrator(
        table=table,
        resolver=ParameterResolver(extractor, backend),
        executor=BookingExecutor(backend, clock=clock, max_retries=1, retry_delay=0),
        claude_client=claude,
        notifier=notifier,
        clock=clock,
        **kwargs,
    )


def _ready_to_commit(state: ConversationState, confirm: bool = True) -> list[SlotCandidate]:
    """Jane identified, four Monday slots offered, optionally the 9:30 one confirmed."""
    state.merge(
        patient={"patient_id": "pat-jane", "first_name": "Jane", "last_name": "Doe"},
        appointment_intent={"appointment_type": "cleaning", "preferred_date": MONDAY.isoformat()},
        pending_action="create",
    )
    offers = [_slot(8), _slot(8, 30), _slot(9), _slot(9, 30)]
    state.offer_slots(offers)
    if confirm:
        state.confirm_slot(offers[3])
    return offers


def _ready_to_move(state: ConversationState, appointment: Appointment, offers: list[SlotCandidate]) -> None:
    """Jane rescheduling her one shown appointment, new times on offer."""
    state.merge(
        patient={"patient_id": "pat-jane", "first_name": "Jane", "last_name": "Doe"},
        pending_action="reschedule",
    )
    state.show_appointments([appointment])
    state.merge(appointment_intent={"existing_appointment_id": appointment.id})
    state.offer_slots(offers)


class TestBookingFlow:
    """Test the new-booking conversation."""

    @pytest.mark.asyncio
    async def test_book_cleaning_end_to_end(self, table, backend, notifier, config, state):
        """Test identify, offer, confirm and commit across two turns."""
        claude = scripted_claude(
            message(tool_use("search_patients", {"first_name": "Jane", "last_name": "Doe"})),
            message(tool_use("find_available_slots", {})),
            message(tool_use("create_appointment", {})),
        )
        orchestrator = _orchestrator(table, backend, claude, notifier)

        first = await orchestrator.run_turn(
            state, "I'd like to book a cleaning for Jane Doe on Monday morning", config
        )

        assert first.phase == TurnPhase.RESPONDING
        assert first.executed == ["search_patients", "find_available_slots"]
        assert first.committed is False
        assert state.patient.patient_id == "pat-jane"
        assert state.pending_action == PendingAction.CREATE
        assert [s.start for s in state.offered_slots] == [_at(8), _at(8, 30), _at(9), _at(9, 30)]
        assert "Monday, March 2" in first.reply
        assert "9:30 AM with Dr. Smith" in first.reply
        assert "appointments.create" not in _operations(backend)

        second = await orchestrator.run_turn(state, "The 9:30 one please", config)

        assert second.committed is True
        assert second.reply == (
            "You're all set, Jane! Your cleaning is booked for Monday, March 2 at 9:30 AM "
            "with Dr. Smith. Is there anything else I can help you with?"
        )
        created = [p for _, op, p in backend.calls if op == "appointments.create"]
        assert len(created) == 1
        assert created[0]["start_time"] == "2026-03-02T09:30:00"
        assert created[0]["provider_id"] == "prov-1"
        assert created[0]["patient_id"] == "pat-jane"
        assert state.last_booked_appointment_id is not None
        assert state.pending_action is None
        assert state.offered_slots == []

        event = notifier.publish.call_args.args[0]
        assert event.event_type == "appointment_created"
        assert event.organization_id == ORG

    @pytest.mark.asyncio
    async def test_office_visit_length(self, table, backend, notifier, state):
        """Test that the office's configured visit length sizes offers and the booking."""
        config = AgentConfig(office_name="Bright Smiles Dental", default_appointment_minutes=60)
        claude = scripted_claude(
            message(tool_use("search_patients", {"first_name": "Jane", "last_name": "Doe"})),
            message(tool_use("find_available_slots", {})),
            message(tool_use("create_appointment", {})),
        )
        orchestrator = _orchestrator(table, backend, claude, notifier)

        await orchestrator.run_turn(
            state, "I'd like to book a cleaning for Jane Doe on Monday morning", config
        )

        assert state.appointment_intent.duration_minutes == 60
        assert {s.duration_minutes for s in state.offered_slots} == {60}
        assert [s.start for s in state.offered_slots[:2]] == [_at(8), _at(9)]

        await orchestrator.run_turn(state, "The second one please", config)

        created = [p for _, op, p in backend.calls if op == "appointments.create"]
        assert created[0]["start_time"] == "2026-03-02T09:00:00"
        assert created[0]["duration_minutes"] == 60

    @pytest.mark.asyncio
    async def test_commit_without_confirmed_slot(self, table, backend, notifier, config, state):
        """Test that the model cannot book a slot the caller never picked."""
        _ready_to_commit(state, confirm=False)
        claude = scripted_claude(message(tool_use("create_appointment", {"start_time": "2026-03-02T08:00:00"})))
        orchestrator = _orchestrator(table, backend, claude, notifier)

        result = await orchestrator.run_turn(state, "hmm, let me think", config)

        assert result.phase == TurnPhase.CLARIFYING
        assert result.reply.startswith("Before I book anything")
        assert "appointments.create" not in _operations(backend)
        notifier.publish.assert_not_called()

    @pytest.mark.asyncio
    async def test_conflict_at_commit_reoffers(self, table, backend, notifier, config, state):
        """Test that a slot taken since it was offered is never double-booked."""
        _ready_to_commit(state)
        book(backend, _at(9, 30), patient_id="pat-someone-else")
        claude = scripted_claude(message(tool_use("create_appointment", {})))
        orchestrator = _orchestrator(table, backend, claude, notifier)

        result = await orchestrator.run_turn(state, "yes please", config)

        assert result.committed is False
        assert result.reply.startswith("I'm sorry, that time was just taken.")
        assert "appointments.create" not in _operations(backend)
        assert state.appointment_intent.selected_slot is None
        assert state.offered_slots
        assert not any(s.same_slot(_slot(9, 30)) for s in state.offered_slots)
        assert {s.provider_id for s in state.offered_slots} == {"prov-1"}
        assert state.pending_action == PendingAction.CREATE

    @pytest.mark.asyncio
    async def test_model_slot_arguments_ignored(self, table, backend, notifier, config, state):
        """Test that the confirmed slot, not the model's arguments, is booked."""
        _ready_to_commit(state)
        claude = scripted_claude(
            message(tool_use("create_appointment", {"start_time": "2026-03-02T08:00:00", "provider_id": "prov-2"}))
        )
        orchestrator = _orchestrator(table, backend, claude, notifier)

        result = await orchestrator.run_turn(state, "go ahead", config)

        assert result.committed is True
        created = [p for _, op, p in backend.calls if op == "appointments.create"][0]
        assert created["start_time"] == "2026-03-02T09:30:00"
        assert created["provider_id"] == "prov-1"

    @pytest.mark.asyncio
    async def test_voice_offers_read_as_sentence(self, table, backend, notifier, config, state):
        claude = scripted_claude(
            message(tool_use("search_patients", {"last_name": "Doe"})),
            message(tool_use("find_available_slots", {})),
        )
        orchestrator = _orchestrator(table, backend, claude, notifier)

        result = await orchestrator.run_turn(
            state, "book a cleaning for Jane Doe on Monday afternoon", config, transport=VOICE
        )

        assert result.reply.startswith("On Monday, March 2 I have 12 PM with Dr. Smith")
        assert "\n" not in result.reply


class TestRescheduleFlow:
    """Test reschedule and cancel ordering."""

    @pytest.mark.asyncio
    async def test_unknown_patient_never_updates(self, table, backend, notifier, config, state):
        """Test that an unknown caller is asked for a name or phone."""
        claude = scripted_claude()
        orchestrator = _orchestrator(table, backend, claude, notifier)

        result = await orchestrator.run_turn(
            state, "This is John Smith and I need to reschedule my appointment", config
        )

        assert result.phase == TurnPhase.CLARIFYING
        assert result.reply.startswith("I couldn't find your record")
        assert state.pending_action == PendingAction.RESCHEDULE
        assert "appointments.update" not in _operations(backend)
        claude.create_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_appointments_shown_first(self, table, backend, notifier, config, state):
        appointment = book(backend, datetime(2026, 3, 4, 14, 0))
        claude = scripted_claude()
        orchestrator = _orchestrator(table, backend, claude, notifier)

        result = await orchestrator.run_turn(
            state, "This is Jane Doe and I need to reschedule my appointment", config
        )

        assert result.executed == ["search_patients", "find_appointments"]
        assert result.reply == (
            "I see your appointment on Wednesday, March 4 at 2 PM (cleaning). "
            "What day would you like to move it to?"
        )
        assert state.appointments_shown is True
        assert state.appointment_intent.existing_appointment_id == appointment.id
        claude.create_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_update_before_lookup_is_redirected(self, table, backend, notifier, config, state):
        """Test that update_appointment first shows the caller's appointments."""
        book(backend, datetime(2026, 3, 4, 14, 0))
        state.merge(patient={"patient_id": "pat-jane", "first_name": "Jane"})
        claude = scripted_claude(message(tool_use("update_appointment", {"appointment_id": "apt-x"})))
        orchestrator = _orchestrator(table, backend, claude, notifier)

        result = await orchestrator.run_turn(state, "can you move it", config)

        assert "I see your appointment on Wednesday, March 4" in result.reply
        assert state.pending_action == PendingAction.RESCHEDULE
        assert "appointments.update" not in _operations(backend)

    @pytest.mark.asyncio
    async def test_reschedule_end_to_end(self, table, backend, notifier, config, state):
        """Test lookup, offer, confirm and move across three turns."""
        appointment = book(backend, datetime(2026, 3, 4, 14, 0))
        claude = scripted_claude(
            message(tool_use("find_available_slots", {})),
            message(tool_use("update_appointment", {})),
        )
        orchestrator = _orchestrator(table, backend, claude, notifier)

        await orchestrator.run_turn(
            state, "This is Jane Doe and I need to reschedule my appointment", config
        )
        offered = await orchestrator.run_turn(state, "Monday morning works better", config)

        assert offered.executed == ["find_available_slots"]
        assert "9:30 AM with Dr. Smith" in offered.reply
        assert state.pending_action == PendingAction.RESCHEDULE

        moved = await orchestrator.run_turn(state, "The 9:30 one please", config)

        assert moved.committed is True
        assert moved.reply == (
            "Done! Your appointment has been moved to Monday, March 2 at 9:30 AM "
            "with Dr. Smith. Anything else I can help with?"
        )
        updated = [p for _, op, p in backend.calls if op == "appointments.update"]
        assert len(updated) == 1
        assert updated[0]["appointment_id"] == appointment.id
        assert updated[0]["start_time"] == "2026-03-02T09:30:00"
        assert "appointments.create" not in _operations(backend)
        assert [(a.id, a.start) for a in state.existing_appointments] == [(appointment.id, _at(9, 30))]
        assert state.pending_action is None
        assert state.completed_action == "reschedule"

        event = notifier.publish.call_args.args[0]
        assert event.event_type == "appointment_rescheduled"
        assert event.appointment_id == appointment.id

    @pytest.mark.asyncio
    async def test_move_overlapping_own_time(self, table, backend, notifier, config, state):
        """Test that the appointment being moved does not conflict with itself."""
        appointment = book(backend, _at(9))
        _ready_to_move(state, appointment, [_slot(9, 15)])
        claude = scripted_claude(message(tool_use("update_appointment", {})))
        orchestrator = _orchestrator(table, backend, claude, notifier)

        result = await orchestrator.run_turn(state, "9:15 is perfect", config)

        assert result.committed is True
        assert result.reply.startswith("Done! Your appointment has been moved to Monday, March 2 at 9:15 AM")
        assert state.existing_appointments[0].start == _at(9, 15)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("utterance", ["Yes, book it", "Please schedule me for the 9:30 one"])
    async def test_booking_words_confirm_the_new_time(
        self, table, backend, notifier, config, state, utterance
    ):
        """Test that "book"/"schedule" while rescheduling picks the offer instead of starting a new booking."""
        appointment = book(backend, datetime(2026, 3, 4, 14, 0))
        _ready_to_move(state, appointment, [_slot(9, 30)])
        claude = scripted_claude(message(tool_use("update_appointment", {})))
        orchestrator = _orchestrator(table, backend, claude, notifier)

        result = await orchestrator.run_turn(state, utterance, config)

        assert result.committed is True
        assert result.reply.startswith("Done! Your appointment has been moved to Monday, March 2 at 9:30 AM")
        assert "appointments.update" in _operations(backend)
        assert "appointments.create" not in _operations(backend)
        assert state.completed_action == "reschedule"

    @pytest.mark.asyncio
    async def test_reschedule_intent_still_switches_from_booking(
        self, table, backend, notifier, config, state
    ):
        _ready_to_commit(state, confirm=False)
        claude = scripted_claude()
        orchestrator = _orchestrator(table, backend, claude, notifier)

        await orchestrator.run_turn(state, "actually I need to reschedule my appointment instead", config)

        assert state.pending_action == PendingAction.RESCHEDULE
        assert state.offered_slots == []

    @pytest.mark.asyncio
    async def test_cancel(self, table, backend, notifier, config, state):
        appointment = book(backend, datetime(2026, 3, 4, 14, 0))
        state.merge(patient={"patient_id": "pat-jane", "first_name": "Jane"}, pending_action="cancel")
        state.show_appointments([appointment])
        state.merge(appointment_intent={"existing_appointment_id": appointment.id})
        claude = scripted_claude(message(tool_use("cancel_appointment", {})))
        orchestrator = _orchestrator(table, backend, claude, notifier)

        result = await orchestrator.run_turn(state, "yes, cancel it", config)

        assert result.committed is True
        assert "has been cancelled" in result.reply
        assert state.existing_appointments == []
        assert state.pending_action is None
        assert notifier.publish.call_args.args[0].event_type == "appointment_cancelled"


class TestRecovery:
    """Test failure handling within a turn."""

    @pytest.mark.asyncio
    async def test_transient_failure_rolls_back(self, table, notifier, config, state):
        backend = FlakyBackend()
        claude = scripted_claude(message(tool_use("search_patients", {"last_name": "Doe"})))
        orchestrator = _orchestrator(table, backend, claude, notifier)

        result = await orchestrator.run_turn(
            state, "I'd like to book a cleaning for Jane Doe on Monday", config
        )

        assert result.error == "transient"
        assert result.reply.startswith("I'm sorry, I'm having trouble reaching our scheduling system")
        assert _operations(backend) == ["patients.search", "patients.search"]
        # facts from the failed turn are discarded, the exchange is kept
        assert state.patient.first_name is None
        assert state.pending_action is None
        assert state.appointment_intent.appointment_type is None
        assert state.messages[-2]["content"].startswith("I'd like to book")
        assert state.messages[-1]["content"] == result.reply

    @pytest.mark.asyncio
    async def test_iteration_limit_hands_off(self, table, backend, notifier, config, state):
        claude = scripted_claude(
            message(tool_use("list_providers")),
            message(tool_use("list_providers")),
        )
        orchestrator = _orchestrator(table, backend, claude, notifier, max_iterations=2)

        result = await orchestrator.run_turn(state, "who are your dentists?", config)

        assert result.handoff is True
        assert result.error == "iteration_limit"
        assert result.reply == "I'm having trouble with this. Let me get a human to help you."
        assert claude.create_message.await_count == 2

    @pytest.mark.asyncio
    async def test_model_unavailable_hands_off(self, table, backend, notifier, config, state):
        claude = AsyncMock()
        claude.create_message = AsyncMock(side_effect=ClaudeClientError("overloaded"))
        orchestrator = _orchestrator(table, backend, claude, notifier)

        result = await orchestrator.run_turn(state, "I want to book", config)

        assert result.handoff is True
        assert result.error == "llm_unavailable"

    @pytest.mark.asyncio
    async def test_unknown_function_reported_to_model(self, table, backend, notifier, config, state):
        claude = scripted_claude(
            message(tool_use("teleport_patient")),
            message(text_block("Sorry, what day works for you?")),
        )
        orchestrator = _orchestrator(table, backend, claude, notifier)

        result = await orchestrator.run_turn(state, "hello", config)

        assert result.reply == "Sorry, what day works for you?"
        tool_result = claude.create_message.call_args_list[1].kwargs["messages"][-1]["content"][0]
        assert tool_result["is_error"] is True
        assert "unknown_function" in tool_result["content"]

    @pytest.mark.asyncio
    async def test_unbacked_confirmation_replaced(self, table, backend, notifier, config, state):
        """Test that free text cannot claim a booking that did not happen."""
        _ready_to_commit(state, confirm=False)
        claude = scripted_claude(message(text_block("Great, you're all set for 9 AM!")))
        orchestrator = _orchestrator(table, backend, claude, notifier)

        result = await orchestrator.run_turn(state, "ok", config)

        assert "you're all set" not in result.reply.lower()
        assert result.reply.startswith("Before I book anything")

    @pytest.mark.asyncio
    async def test_plain_reply_passes_through(self, table, backend, notifier, config, state):
        claude = scripted_claude(message(text_block("We're at 12 Main Street.")))
        orchestrator = _orchestrator(table, backend, claude, notifier)

        result = await orchestrator.run_turn(state, "where are you located?", config)

        assert result.reply == "We're at 12 Main Street."
        assert result.phase == TurnPhase.RESPONDING
        system = claude.create_message.call_args.kwargs["system"]
        assert "Bright Smiles Dental" in system
        assert "2026-03-01" in system

    def test_catalog_without_workflow_functions_rejected(self, backend, notifier):
        from app.core.agent.dispatch_table import DispatchConfigurationError, FunctionSpec

        table = DispatchTable([
            FunctionSpec(name="list_providers", category="providers", description="x", operation="providers.list")
        ])

        with pytest.raises(DispatchConfigurationError):
            _orchestrator(table, backend, scripted_claude(), notifier)
