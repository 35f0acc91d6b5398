"""
Booking Orchestrator

The function-calling decision loop for one conversational turn:

    Idle -> Planning -> Resolving -> Executing -> StateUpdate -> Responding -> Idle
                           |
                           +-> Clarifying (required parameters missing)

The model only decides which catalog functions to call. Everything that
keeps a booking safe is enforced here, whatever the model asks for:
- create/update is dispatched only with a caller-confirmed slot
- reschedule/cancel only after the caller's appointments were shown
- confirmations are only built from a successful create/update result
- a conflict at commit time re-runs the planner and re-offers
- a transient backend failure is retried once, then the turn ends with
  "please try again" and the state rolled back to the start of the turn
- a turn that keeps calling functions ends in a human handoff
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Optional

from app.config import settings
from app.core.agent.dispatch_table import DispatchTable, FunctionSpec
from app.core.agent.resolver import MissingRequired, ParameterResolver
from app.core.agent.tenant_config import AgentConfig
from app.core.agent.transport import TransportCapabilities, WEB
from app.core.intelligence.session.models import UNSET, ConversationState, PendingAction
from app.core.intelligence.slots.heuristics import extract_facts, match_offered_slot
from app.core.intelligence.slots.types import UtteranceFacts
from app.core.scheduling.availability import pick_offers
from app.core.scheduling.backend import (
    ConflictError,
    NotFoundError,
    TransientBackendError,
    ValidationFailedError,
)
from app.core.scheduling.operations import BookingExecutor, slot_search_scope
from app.core.scheduling.response import ReplyBuilder
from app.core.scheduling.types import Appointment, BookingEvent, Patient, SlotCandidate
from app.infra.claude import ClaudeClient, ClaudeClientError
from app.infra.notifications import NotificationPublisher, get_notification_publisher

logger = logging.getLogger(__name__)


class TurnPhase(str, Enum):
    """Orchestrator state machine phases."""

    IDLE = "idle"
    PLANNING = "planning"
    RESOLVING = "resolving"
    EXECUTING = "executing"
    STATE_UPDATE = "state_update"
    RESPONDING = "responding"
    CLARIFYING = "clarifying"


ACTION_FOR_INTENT = {
    "book": PendingAction.CREATE,
    "reschedule": PendingAction.RESCHEDULE,
    "cancel": PendingAction.CANCEL,
}

# Functions the orchestrator runs on its own for mandatory workflow steps
PATIENT_SEARCH = "search_patients"
APPOINTMENT_LOOKUP = "find_appointments"

# Caller-facing claims that something was booked/changed
CONFIRMATION_CLAIM = re.compile(
    r"\b(you'?re (all )?(set|booked|confirmed)"
    r"|(is|are|has been|have been) (now )?(booked|confirmed|scheduled|rescheduled|moved|cancell?ed))\b",
    re.IGNORECASE,
)

# Values the extraction step found, folded back into state
LEARNED_PATIENT_FIELDS = ("first_name", "last_name", "phone", "birthdate", "email")
LEARNED_INTENT_FIELDS = {
    "date_start": "preferred_date",
    "time_preference": "preferred_time",
    "appointment_type": "appointment_type",
}


ORCHESTRATOR_PROMPT = """You are {persona} at {office_name}. You help callers book, reschedule and cancel dental appointments using the functions provided.

Today is {today} ({weekday}).
{channel}

WORKFLOW:
- Identify the patient with search_patients before booking, changing or cancelling.
  Create a patient record only for a new patient, after a search found nothing.
- Use find_available_slots to offer times. Never choose a time for the caller.
- Call create_appointment or update_appointment only after the caller explicitly picked one of the offered times.
- To reschedule or cancel, look up the caller's appointments with find_appointments first.
- Leave out arguments you are not sure about; known details are filled in automatically.
- Never say an appointment is booked, moved or cancelled unless the function call succeeded.
{workflow}
WHAT YOU KNOW SO FAR:
{state_summary}

Keep replies short, warm and conversational. Ask for one thing at a time."""


@dataclass
class TurnResult:
    """Outcome of one orchestrator turn."""

    reply: str
    phase: TurnPhase
    executed: list[str] = field(default_factory=list)
    committed: bool = False
    handoff: bool = False
    error: Optional[str] = None
    iterations: int = 0


@dataclass
class _CallOutcome:
    """What one function call means for the rest of the turn."""

    reply: Optional[str] = None
    """Set when the call ends the turn with a deterministic reply."""

    phase: TurnPhase = TurnPhase.RESPONDING
    tool_content: Any = None
    is_error: bool = False
    committed: bool = False

    @property
    def ends_turn(self) -> bool:
        return self.reply is not None


@dataclass
class _Turn:
    state: ConversationState
    config: AgentConfig
    transport: TransportCapabilities
    replies: ReplyBuilder
    today: date
    handoff_note: str = ""
    executed: list[str] = field(default_factory=list)
    committed: bool = False


def _payload(result: Any) -> Any:
    """Make a backend result JSON-friendly for the decision step."""
    if isinstance(result, list):
        return [_payload(item) for item in result]
    if hasattr(result, "to_dict"):
        return result.to_dict()
    return result


def _mask(phone: Optional[str]) -> str:
    return f"***{phone[-4:]}" if phone else "-"


class BookingOrchestrator:
    """
    Runs one turn of the booking conversation.

    The caller (Dispatcher) holds the session lock and persists the state
    afterwards; the orchestrator only mutates the ConversationState it is
    given.
    """

    def __init__(
        self,
        table: DispatchTable,
        resolver: ParameterResolver,
        executor: BookingExecutor,
        claude_client: Optional[ClaudeClient] = None,
        notifier: Optional[NotificationPublisher] = None,
        clock: Optional[Callable[[], datetime]] = None,
        max_iterations: Optional[int] = None,
    ):
        self._table = table
        self._resolver = resolver
        self._executor = executor
        self._client = claude_client
        self._notifier = notifier
        self._clock = clock or datetime.now
        self._max_iterations = max_iterations or settings.orchestrator_max_iterations

        # Fail fast on a catalog that lacks the mandatory workflow steps
        table.require(PATIENT_SEARCH)
        table.require(APPOINTMENT_LOOKUP)

    def _get_client(self) -> ClaudeClient:
        """Get Claude client, creating if necessary."""
        if self._client is None:
            self._client = ClaudeClient.get_instance()
        return self._client

    def _get_notifier(self) -> NotificationPublisher:
        if self._notifier is None:
            self._notifier = get_notification_publisher()
        return self._notifier

    # === Turn ===

    async def run_turn(
        self,
        state: ConversationState,
        utterance: str,
        config: AgentConfig,
        transport: TransportCapabilities = WEB,
        intent_hint: Optional[str] = None,
        handoff_facts: Optional[UtteranceFacts] = None,
        handoff_note: str = "",
    ) -> TurnResult:
        """
        Process one caller utterance.

        Args:
            state: Session state (mutated in place)
            utterance: Caller's text
            config: Tenant agent configuration
            transport: Channel capabilities
            intent_hint: Booking intent recognized by the greeting agent
            handoff_facts: What the greeting agent read from the utterance;
                fills gaps the orchestrator's own heuristics leave
            handoff_note: Greeting agent's context summary for the prompt

        Returns:
            TurnResult with the reply and the phase the turn ended in

        Raises:
            DispatchConfigurationError: The catalog lacks a function the
                orchestrator needs
        """
        snapshot = state.snapshot()
        state.turn_count += 1
        state.add_message("user", utterance)

        turn = _Turn(
            state=state,
            config=config,
            transport=transport,
            replies=ReplyBuilder(transport),
            today=self._clock().date(),
            handoff_note=handoff_note,
        )

        try:
            result = await self._run(turn, utterance, intent_hint, handoff_facts)
        except TransientBackendError as e:
            logger.error(
                f"Session {state.session_id}: booking system unavailable, "
                f"rolling back turn: {e.message}"
            )
            state.restore_facts(snapshot)
            result = TurnResult(
                reply=turn.replies.try_again(),
                phase=TurnPhase.RESPONDING,
                executed=turn.executed,
                error="transient",
            )

        state.add_message("assistant", result.reply)
        logger.info(
            f"Session {state.session_id} turn {state.turn_count}: phase={result.phase.value} "
            f"executed={result.executed} committed={result.committed} handoff={result.handoff}"
        )
        return result

    async def _run(
        self,
        turn: _Turn,
        utterance: str,
        intent_hint: Optional[str],
        handoff_facts: Optional[UtteranceFacts],
    ) -> TurnResult:
        self._ingest(turn, utterance, intent_hint, handoff_facts)

        outcome = await self._enforce_workflow(turn)
        if outcome is not None:
            return self._finish(turn, outcome)

        return await self._plan(turn)

    # === Heuristic ingestion ===

    def _ingest(
        self,
        turn: _Turn,
        utterance: str,
        intent_hint: Optional[str],
        handoff_facts: Optional[UtteranceFacts] = None,
    ) -> None:
        """Fold cheap heuristic facts and slot choices into state."""
        state = turn.state
        facts = extract_facts(utterance, turn.today)
        if handoff_facts is not None:
            facts = facts.fill_missing(handoff_facts)

        if facts.wants_reidentify:
            state.reidentify()

        intent = facts.intent.value if facts.intent else intent_hint
        action = ACTION_FOR_INTENT.get(intent) if intent else None
        slot = match_offered_slot(utterance, state.offered_slots) if state.offered_slots else None

        # "yes, book it" while rescheduling confirms the offer; only an explicit
        # reschedule/cancel switches away from a pending action
        if (
            action is not None
            and state.pending_action is not None
            and action != state.pending_action
            and (action is PendingAction.CREATE or slot is not None)
        ):
            logger.debug(
                f"Session {state.session_id}: keeping pending {state.pending_action.value}, "
                f"ignoring {action.value} intent"
            )
            action = None

        intent_update = facts.intent_update()
        if state.appointment_intent.duration_minutes is None:
            # Office default visit length drives slot search and the commit
            intent_update["duration_minutes"] = turn.config.default_appointment_minutes

        changed = state.merge(
            patient=facts.patient_update(),
            appointment_intent=intent_update,
            pending_action=action,
        )
        if "pending_action" in changed:
            state.offer_slots([])
            state.clear_selected_slot()
            slot = None
        if changed:
            logger.debug(f"Session {state.session_id}: heuristics updated {changed}")

        if state.offered_slots:
            if slot is not None and state.confirm_slot(slot):
                logger.info(
                    f"Session {state.session_id}: caller confirmed slot "
                    f"{slot.start.isoformat()} provider={slot.provider_id}"
                )
        elif (
            state.pending_action in (PendingAction.RESCHEDULE, PendingAction.CANCEL)
            and len(state.existing_appointments) > 1
            and state.appointment_intent.existing_appointment_id is None
        ):
            self._match_existing_appointment(state, utterance)

    @staticmethod
    def _match_existing_appointment(state: ConversationState, utterance: str) -> None:
        """Pick which shown appointment the caller means ("the Tuesday one")."""
        as_slots = [
            SlotCandidate(
                start=a.start,
                provider_id=a.provider_id,
                operatory_id=a.operatory_id,
                duration_minutes=a.duration_minutes,
            )
            for a in state.existing_appointments
        ]
        chosen = match_offered_slot(utterance, as_slots)
        if chosen is None:
            return
        index = as_slots.index(chosen)
        state.merge(
            appointment_intent={"existing_appointment_id": state.existing_appointments[index].id}
        )

    # === Mandatory workflow ordering ===

    async def _enforce_workflow(self, turn: _Turn) -> Optional[_CallOutcome]:
        """
        Reschedule/cancel: identify the patient and show their appointments
        before anything else happens.
        """
        state = turn.state
        if state.pending_action not in (PendingAction.RESCHEDULE, PendingAction.CANCEL):
            return None
        if state.appointments_shown:
            return None

        if not state.patient.is_identified:
            outcome = await self._call(turn, self._table.require(PATIENT_SEARCH), {})
            if outcome.ends_turn:
                return outcome
            if not state.patient.is_identified:
                return _CallOutcome(
                    reply=turn.replies.ask_name_or_phone(), phase=TurnPhase.CLARIFYING
                )

        return await self._call(turn, self._table.require(APPOINTMENT_LOOKUP), {})

    # === Planning loop ===

    async def _plan(self, turn: _Turn) -> TurnResult:
        state = turn.state
        client = self._get_client()
        tools = self._table.as_anthropic_tools()
        messages = self._claude_messages(state)

        for iteration in range(1, self._max_iterations + 1):
            logger.debug(f"Session {state.session_id}: planning iteration {iteration}")
            try:
                response = await client.create_message(
                    messages=messages,
                    system=self._system_prompt(turn),
                    model=settings.orchestrator_model,
                    max_tokens=1024,
                    temperature=0.0,
                    tools=tools,
                    use_fallback_on_error=True,
                )
            except ClaudeClientError as e:
                logger.error(f"Session {state.session_id}: decision step failed: {e}")
                return TurnResult(
                    reply=turn.replies.handoff(),
                    phase=TurnPhase.RESPONDING,
                    executed=turn.executed,
                    handoff=True,
                    error="llm_unavailable",
                    iterations=iteration,
                )

            tool_uses = [b for b in response.content if getattr(b, "type", None) == "tool_use"]
            if response.stop_reason != "tool_use" or not tool_uses:
                return TurnResult(
                    reply=self._guard_text(turn, self._extract_text(response)),
                    phase=TurnPhase.RESPONDING,
                    executed=turn.executed,
                    committed=turn.committed,
                    iterations=iteration,
                )

            tool_results = []
            for tool_use in tool_uses:
                outcome = await self._dispatch(turn, tool_use.name, tool_use.input or {})
                if outcome.ends_turn:
                    result = self._finish(turn, outcome)
                    result.iterations = iteration
                    return result
                tool_results.append({
                    "type": "tool_result",
                    "tool_use_id": tool_use.id,
                    "content": json.dumps(outcome.tool_content, default=str),
                    "is_error": outcome.is_error,
                })

            messages.append({"role": "assistant", "content": self._serialize_content_blocks(response.content)})
            messages.append({"role": "user", "content": tool_results})

        logger.warning(
            f"Session {state.session_id}: no reply after {self._max_iterations} iterations, handing off"
        )
        return TurnResult(
            reply=turn.replies.handoff(),
            phase=TurnPhase.RESPONDING,
            executed=turn.executed,
            committed=turn.committed,
            handoff=True,
            error="iteration_limit",
            iterations=self._max_iterations,
        )

    async def _dispatch(self, turn: _Turn, name: str, arguments: dict) -> _CallOutcome:
        """Run one model-selected call."""
        spec = self._table.resolve_spec(name)
        if spec is None:
            logger.warning(f"Decision step asked for unknown function {name}")
            return _CallOutcome(
                tool_content={"error": "unknown_function", "message": f"No function named {name}"},
                is_error=True,
            )
        return await self._call(turn, spec, arguments)

    # === One call: guard -> resolve -> execute -> fold ===

    async def _call(self, turn: _Turn, spec: FunctionSpec, requested: dict) -> _CallOutcome:
        state = turn.state
        requested = dict(requested)

        rejected = await self._guard(turn, spec, requested)
        if rejected is not None:
            return rejected

        # Resolving
        try:
            resolved = await self._resolver.resolve(spec, requested, state, today=turn.today)
        except NotFoundError as e:
            state.record_call(spec.name, requested, "not_found", error=e.message)
            return self._not_found(turn, spec, e)

        if isinstance(resolved, MissingRequired):
            state.record_call(spec.name, requested, "missing", error=f"missing {resolved.missing}")
            return _CallOutcome(reply=self._clarify(turn, spec, resolved), phase=TurnPhase.CLARIFYING)

        self._remember(state, spec, resolved.learned)

        # Executing
        try:
            result = await self._executor.execute(
                state.organization_id, spec.operation, resolved.arguments
            )
        except NotFoundError as e:
            state.record_call(spec.name, resolved.arguments, "not_found", resolved.sources, e.message)
            return self._not_found(turn, spec, e)
        except ConflictError as e:
            state.record_call(spec.name, resolved.arguments, "conflict", resolved.sources, e.message)
            if spec.commits_booking:
                return await self._reoffer(turn)
            return _CallOutcome(
                tool_content={"error": "conflict", "message": e.message}, is_error=True
            )
        except ValidationFailedError as e:
            state.record_call(spec.name, resolved.arguments, "validation", resolved.sources, e.message)
            logger.info(f"{spec.name} rejected by backend: {e.message}")
            return _CallOutcome(
                tool_content={"error": "validation_failed", "message": e.message}, is_error=True
            )
        except TransientBackendError as e:
            state.record_call(spec.name, resolved.arguments, "transient", resolved.sources, e.message)
            raise

        state.record_call(spec.name, resolved.arguments, "ok", resolved.sources)
        turn.executed.append(spec.name)

        # State update
        return await self._fold(turn, spec, result)

    async def _guard(self, turn: _Turn, spec: FunctionSpec, requested: dict) -> Optional[_CallOutcome]:
        """Workflow rules the decision step cannot override."""
        state = turn.state

        if spec.action in ("reschedule", "cancel"):
            if not state.appointments_shown:
                logger.info(f"Session {state.session_id}: {spec.name} needs appointments shown first")
                state.merge(pending_action=spec.action)
                return await self._enforce_workflow(turn)
            shown = {a.id for a in state.existing_appointments}
            appointment_id = requested.get("appointment_id") or state.appointment_intent.existing_appointment_id
            if appointment_id is not None and appointment_id not in shown:
                state.record_call(spec.name, requested, "rejected", error="appointment not shown")
                return _CallOutcome(
                    tool_content={
                        "error": "unknown_appointment",
                        "message": "Use one of the appointment ids returned by find_appointments",
                    },
                    is_error=True,
                )
            if appointment_id is None and len(state.existing_appointments) > 1:
                state.record_call(spec.name, requested, "rejected", error="appointment not chosen")
                return _CallOutcome(
                    reply=turn.replies.show_appointments(state.existing_appointments, spec.action),
                    phase=TurnPhase.CLARIFYING,
                )

        if spec.commits_booking:
            slot = state.appointment_intent.selected_slot
            if slot is None:
                logger.warning(
                    f"Session {state.session_id}: {spec.name} blocked, no confirmed slot"
                )
                state.record_call(spec.name, requested, "rejected", error="no confirmed slot")
                return _CallOutcome(
                    reply=turn.replies.confirm_which_slot(state.offered_slots),
                    phase=TurnPhase.CLARIFYING,
                )
            confirmed = {
                "start_time": slot.start.isoformat(timespec="seconds"),
                "provider_id": slot.provider_id,
                "operatory_id": slot.operatory_id,
            }
            for name, value in confirmed.items():
                given = requested.pop(name, None)
                if given is not None and str(given) != str(value):
                    logger.warning(
                        f"Session {state.session_id}: ignoring {name}={given} that differs "
                        f"from the confirmed slot"
                    )

        return None

    # === Folding results into state ===

    async def _fold(self, turn: _Turn, spec: FunctionSpec, result: Any) -> _CallOutcome:
        state = turn.state

        match spec.operation:
            case "patients.search":
                return self._fold_patients(turn, result)

            case "patients.create" | "patients.get" | "patients.update":
                patient = Patient.from_dict(result)
                self._adopt_patient(state, patient, is_new=spec.operation == "patients.create")
                return _CallOutcome(tool_content=patient.to_dict())

            case "appointments.list":
                state.show_appointments(result)
                if len(result) == 1:
                    state.merge(appointment_intent={"existing_appointment_id": result[0].id})
                if state.pending_action in (PendingAction.RESCHEDULE, PendingAction.CANCEL):
                    return _CallOutcome(
                        reply=turn.replies.show_appointments(result, state.pending_action.value),
                    )
                return _CallOutcome(tool_content=_payload(result))

            case "slots.find":
                return self._fold_slots(turn, result)

            case "appointments.create" | "appointments.update":
                return self._fold_commit(turn, spec, result)

            case "appointments.cancel":
                appointment: Appointment = result
                state.existing_appointments = [
                    a for a in state.existing_appointments if a.id != appointment.id
                ]
                state.merge(
                    appointment_intent={"existing_appointment_id": UNSET},
                    pending_action=UNSET,
                )
                state.completed_action = "cancel"
                self._publish(state, "appointment_cancelled", appointment)
                return _CallOutcome(
                    reply=turn.replies.cancellation_confirmed(appointment), committed=True
                )

            case _:
                return _CallOutcome(tool_content=_payload(result))

    def _fold_patients(self, turn: _Turn, patients: list[Patient]) -> _CallOutcome:
        state = turn.state
        known = state.patient

        matches = patients
        if len(matches) > 1 and known.birthdate:
            matches = [p for p in matches if p.birthdate == known.birthdate] or matches
        if len(matches) > 1 and known.phone:
            digits = re.sub(r"\D", "", known.phone)[-10:]
            matches = [p for p in matches if re.sub(r"\D", "", p.phone or "")[-10:] == digits] or matches

        if len(matches) > 1:
            logger.info(f"Session {state.session_id}: {len(matches)} patients match, asking to narrow")
            return _CallOutcome(reply=turn.replies.several_patients(), phase=TurnPhase.CLARIFYING)

        self._adopt_patient(state, matches[0])
        return _CallOutcome(tool_content=[matches[0].to_dict()])

    @staticmethod
    def _adopt_patient(state: ConversationState, patient: Patient, is_new: bool = False) -> bool:
        if state.patient.patient_id and state.patient.patient_id != patient.id:
            logger.warning(
                f"Session {state.session_id}: not adopting patient {patient.id}, "
                f"session is bound to {state.patient.patient_id}"
            )
            return False
        state.merge(patient={
            "patient_id": patient.id,
            "first_name": patient.first_name or None,
            "last_name": patient.last_name or None,
            "phone": patient.phone,
            "birthdate": patient.birthdate,
            "email": patient.email,
            "is_new_patient": True if is_new else None,
        })
        logger.info(
            f"Session {state.session_id}: patient identified {patient.id} (phone {_mask(patient.phone)})"
        )
        return True

    def _fold_slots(self, turn: _Turn, candidates: list[SlotCandidate]) -> _CallOutcome:
        state = turn.state
        offers = pick_offers(candidates, settings.max_offered_slots)
        state.clear_selected_slot()
        state.offer_slots(offers)
        if state.pending_action is None:
            state.merge(pending_action=PendingAction.CREATE)

        if not offers:
            day = None
            if state.appointment_intent.preferred_date:
                day = datetime.fromisoformat(state.appointment_intent.preferred_date)
            return _CallOutcome(reply=turn.replies.no_availability(day))
        return _CallOutcome(reply=turn.replies.offer_slots(offers))

    def _fold_commit(self, turn: _Turn, spec: FunctionSpec, appointment: Appointment) -> _CallOutcome:
        state = turn.state
        slot = state.appointment_intent.selected_slot
        provider_name = slot.provider_name if slot else None

        state.last_booked_appointment_id = appointment.id
        state.completed_action = spec.action
        state.offer_slots([])
        state.clear_selected_slot()
        state.merge(
            appointment_intent={"existing_appointment_id": UNSET},
            pending_action=UNSET,
        )
        turn.committed = True

        if spec.operation == "appointments.create":
            self._publish(state, "appointment_created", appointment, provider_name)
            reply = turn.replies.booking_confirmed(
                appointment, provider_name=provider_name, patient_name=state.patient.first_name
            )
        else:
            state.existing_appointments = [
                appointment if a.id == appointment.id else a for a in state.existing_appointments
            ]
            self._publish(state, "appointment_rescheduled", appointment, provider_name)
            reply = turn.replies.reschedule_confirmed(appointment, provider_name=provider_name)

        logger.info(
            f"Session {state.session_id}: {spec.name} committed appointment {appointment.id} "
            f"at {appointment.start.isoformat()}"
        )
        return _CallOutcome(reply=reply, committed=True)

    @staticmethod
    def _remember(state: ConversationState, spec: FunctionSpec, learned: dict) -> None:
        if not learned:
            return
        patient = {k: v for k, v in learned.items() if k in LEARNED_PATIENT_FIELDS}
        intent = {}
        for name, target in LEARNED_INTENT_FIELDS.items():
            if name in learned and (target != "preferred_date" or spec.operation == "slots.find"):
                intent[target] = learned[name]
        state.merge(patient=patient, appointment_intent=intent)

    def _publish(
        self,
        state: ConversationState,
        event_type: str,
        appointment: Appointment,
        provider_name: Optional[str] = None,
    ) -> None:
        self._get_notifier().publish(
            BookingEvent(
                event_type=event_type,
                organization_id=state.organization_id,
                session_id=state.session_id,
                appointment_id=appointment.id,
                patient_name=state.patient.full_name,
                appointment_time=appointment.start,
                appointment_type=appointment.appointment_type,
                provider_name=provider_name,
            )
        )

    # === Recovery ===

    async def _reoffer(self, turn: _Turn) -> _CallOutcome:
        """The confirmed slot was taken: search the same day with the same provider and re-offer."""
        state = turn.state
        lost = state.appointment_intent.selected_slot
        state.clear_selected_slot()

        arguments = slot_search_scope(lost)
        if state.appointment_intent.preferred_time:
            arguments["time_preference"] = state.appointment_intent.preferred_time
        try:
            candidates = await self._executor.execute(state.organization_id, "slots.find", arguments)
        except (NotFoundError, ValidationFailedError) as e:
            logger.warning(f"Session {state.session_id}: re-offer search failed: {e.message}")
            candidates = []

        offers = pick_offers(
            [c for c in candidates if not c.same_slot(lost)], settings.max_offered_slots
        )
        state.offer_slots(offers)
        logger.info(f"Session {state.session_id}: slot taken, re-offering {len(offers)} slots")
        return _CallOutcome(reply=turn.replies.slot_taken(offers))

    def _not_found(self, turn: _Turn, spec: FunctionSpec, error: NotFoundError) -> _CallOutcome:
        state = turn.state
        entity = error.entity or spec.category.rstrip("s")
        logger.info(f"Session {state.session_id}: {spec.name} found no {entity}")

        if entity == "patient":
            if state.pending_action == PendingAction.CREATE or state.patient.is_new_patient:
                return _CallOutcome(
                    reply=turn.replies.offer_create_patient(state.patient.full_name),
                    phase=TurnPhase.CLARIFYING,
                )
            return _CallOutcome(reply=turn.replies.ask_name_or_phone(), phase=TurnPhase.CLARIFYING)
        return _CallOutcome(reply=turn.replies.which_one(entity), phase=TurnPhase.CLARIFYING)

    def _clarify(self, turn: _Turn, spec: FunctionSpec, missing: MissingRequired) -> str:
        if spec.requires_any and set(missing.missing) <= set(spec.requires_any):
            return turn.replies.ask_identity()
        if "start_time" in missing.missing and turn.state.offered_slots:
            return turn.replies.confirm_which_slot(turn.state.offered_slots)
        return turn.replies.ask_for(missing.labels)

    def _finish(self, turn: _Turn, outcome: _CallOutcome) -> TurnResult:
        return TurnResult(
            reply=outcome.reply,
            phase=outcome.phase,
            executed=turn.executed,
            committed=turn.committed or outcome.committed,
        )

    def _guard_text(self, turn: _Turn, text: str) -> str:
        """Never let free text claim a booking change that did not happen."""
        state = turn.state
        if (
            not turn.committed
            and state.pending_action is not None
            and CONFIRMATION_CLAIM.search(text)
        ):
            logger.warning(f"Session {state.session_id}: replacing unbacked confirmation text")
            if state.offered_slots:
                return turn.replies.confirm_which_slot(state.offered_slots)
            return turn.replies.ask_for([])
        return turn.transport.fit(text)

    # === Prompting ===

    def _system_prompt(self, turn: _Turn) -> str:
        config = turn.config
        if turn.transport.supports_audio:
            channel = "Replies are spoken aloud: plain sentences, no lists or formatting."
        elif turn.transport.supports_rich_formatting:
            channel = "Replies are shown in a chat window: short paragraphs, simple lists are fine."
        else:
            channel = "Replies are sent as plain text messages."

        workflow = ""
        if config.workflow_instructions:
            workflow += f"\nOFFICE INSTRUCTIONS:\n{config.workflow_instructions}\n"
        if config.business_rules:
            workflow += "\nBUSINESS RULES:\n" + "\n".join(f"- {r}" for r in config.business_rules) + "\n"
        if turn.handoff_note:
            workflow += f"\nFRONT DESK NOTE (from the caller's message):\n{turn.handoff_note}\n"

        return ORCHESTRATOR_PROMPT.format(
            persona=config.persona,
            office_name=config.office_name,
            today=turn.today.isoformat(),
            weekday=turn.today.strftime("%A"),
            channel=channel,
            workflow=workflow,
            state_summary=turn.state.summary(),
        )

    @staticmethod
    def _claude_messages(state: ConversationState) -> list[dict]:
        """Text history as alternating user/assistant messages, starting with user."""
        messages: list[dict] = []
        for message in state.messages:
            role = "assistant" if message.get("role") == "assistant" else "user"
            content = str(message.get("content", ""))
            if not messages and role == "assistant":
                continue
            if messages and messages[-1]["role"] == role:
                messages[-1]["content"] += "\n" + content
            else:
                messages.append({"role": role, "content": content})
        return messages

    @staticmethod
    def _serialize_content_blocks(content: list) -> list[dict]:
        """Serialize Anthropic content blocks to dicts."""
        serialized = []
        for block in content:
            if getattr(block, "type", None) == "text":
                serialized.append({"type": "text", "text": block.text})
            elif getattr(block, "type", None) == "tool_use":
                serialized.append({
                    "type": "tool_use",
                    "id": block.id,
                    "name": block.name,
                    "input": block.input,
                })
            elif isinstance(block, dict):
                serialized.append(block)
        return serialized

    @staticmethod
    def _extract_text(response: Any) -> str:
        parts = [
            block.text for block in response.content or []
            if getattr(block, "type", None) == "text" and block.text
        ]
        if parts:
            return "\n".join(parts).strip()
        return "Sorry, could you say that again?"
