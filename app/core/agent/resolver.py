"""
Parameter resolver.

Turns a (possibly partial) function call from the decision step into a
fully-populated argument map, in this order:

1. Arguments the decision step passed explicitly (never overwritten)
2. Typed state bindings (patient id from state.patient, start time from
   the confirmed slot, ...)
3. One bounded LLM extraction for what is still missing
4. Declared defaults, for optional parameters only

Whatever required parameter is still missing comes back as
MissingRequired so the orchestrator can ask the caller.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Optional, Union

from app.config import settings
from app.core.agent.dispatch_table import FunctionSpec, ParamSpec
from app.core.intelligence.session.models import ConversationState
from app.core.intelligence.slots.extractor import ParameterExtractor
from app.core.scheduling.backend import BookingBackend

logger = logging.getLogger(__name__)


StateGetter = Callable[[ConversationState], Any]


def _slot_value(attribute: str) -> StateGetter:
    def getter(state: ConversationState) -> Any:
        slot = state.appointment_intent.selected_slot
        return getattr(slot, attribute) if slot else None
    return getter


def _slot_start(state: ConversationState) -> Optional[str]:
    slot = state.appointment_intent.selected_slot
    return slot.start.isoformat(timespec="seconds") if slot else None


# Identity facts, usable by any function that needs them
IDENTITY_BINDINGS: dict[str, StateGetter] = {
    "patient_id": lambda s: s.patient.patient_id,
    "first_name": lambda s: s.patient.first_name,
    "last_name": lambda s: s.patient.last_name,
    "phone": lambda s: s.patient.phone,
    "birthdate": lambda s: s.patient.birthdate,
    "email": lambda s: s.patient.email,
    "appointment_id": lambda s: s.appointment_intent.existing_appointment_id,
}

# What the caller asked for, only when searching for slots
SLOT_SEARCH_BINDINGS: dict[str, StateGetter] = {
    "date_start": lambda s: s.appointment_intent.preferred_date,
    "time_preference": lambda s: s.appointment_intent.preferred_time,
    "duration_minutes": lambda s: s.appointment_intent.duration_minutes,
}

# The caller-confirmed slot, only when committing a booking
COMMIT_BINDINGS: dict[str, StateGetter] = {
    "start_time": _slot_start,
    "provider_id": _slot_value("provider_id"),
    "operatory_id": _slot_value("operatory_id"),
    "duration_minutes": _slot_value("duration_minutes"),
    "appointment_type": lambda s: s.appointment_intent.appointment_type,
}


@dataclass
class ResolvedCall:
    """A function call with every required argument populated."""

    function_name: str
    arguments: dict[str, Any]
    sources: dict[str, str] = field(default_factory=dict)
    """Where each argument came from: requested, state, extraction, default."""

    learned: dict[str, Any] = field(default_factory=dict)
    """Values the extraction step found, to be folded back into state."""


@dataclass
class MissingRequired:
    """Required parameters that could not be resolved."""

    function_name: str
    missing: list[str]
    labels: list[str] = field(default_factory=list)
    extraction_failed: bool = False


ResolveOutcome = Union[ResolvedCall, MissingRequired]


def _context_bindings(spec: FunctionSpec) -> dict[str, StateGetter]:
    if spec.commits_booking:
        return COMMIT_BINDINGS
    if spec.operation == "slots.find":
        return SLOT_SEARCH_BINDINGS
    return {}


def coerce_value(param: ParamSpec, value: Any) -> Any:
    """
    Normalize a value to the parameter's declared type.

    Raises:
        ValueError: The value cannot represent that type
    """
    match param.type:
        case "integer":
            if isinstance(value, bool):
                raise ValueError(f"{param.name}: expected an integer")
            return int(value)
        case "number":
            return float(value)
        case "boolean":
            if isinstance(value, str):
                return value.strip().lower() in ("true", "yes", "1")
            return bool(value)
        case "date":
            return date.fromisoformat(str(value)[:10]).isoformat()
        case "datetime":
            return datetime.fromisoformat(str(value)).isoformat(timespec="seconds")
        case _:
            return str(value).strip()


class ParameterResolver:
    """
    Fills gaps in a requested function call.

    Reads ConversationState but never writes it; the orchestrator folds
    `learned` values back in.
    """

    def __init__(
        self,
        extractor: ParameterExtractor,
        backend: BookingBackend,
    ):
        self._extractor = extractor
        self._backend = backend

    async def resolve(
        self,
        spec: FunctionSpec,
        requested_args: Optional[dict[str, Any]],
        state: ConversationState,
        today: Optional[date] = None,
    ) -> ResolveOutcome:
        """
        Resolve one call.

        Args:
            spec: Function being called
            requested_args: Arguments from the decision step
            state: Session state (read only)
            today: Reference date for relative dates in extraction

        Returns:
            ResolvedCall, or MissingRequired naming what to ask for

        Raises:
            NotFoundError: A backend-owned default has nothing to offer
                (e.g. no active operatory)
        """
        arguments: dict[str, Any] = {}
        sources: dict[str, str] = {}

        for name, value in (requested_args or {}).items():
            param = spec.param(name)
            if param is None:
                logger.debug(f"{spec.name}: dropping unknown argument {name}")
                continue
            if value is None or value == "":
                continue
            try:
                arguments[name] = coerce_value(param, value)
            except (TypeError, ValueError):
                arguments[name] = value
            sources[name] = "requested"

        # State lookup
        wanted = [p.name for p in spec.required]
        if spec.requires_any and not any(n in arguments for n in spec.requires_any):
            wanted += spec.requires_any
        bindings = {**IDENTITY_BINDINGS, **_context_bindings(spec)}

        for name in wanted:
            self._fill_from_state(name, bindings, state, arguments, sources)
        for name, getter in _context_bindings(spec).items():
            if spec.param(name) is not None:
                self._fill_from_state(name, {name: getter}, state, arguments, sources)

        # Bounded extraction, once, only for what is still missing
        missing = self._missing(spec, arguments)
        learned: dict[str, Any] = {}
        extraction_failed = False

        extractable = {
            name: spec.param(name).description or name.replace("_", " ")
            for name in missing
            if spec.param(name).extractable
        }
        if extractable:
            result = await self._extractor.extract(
                fields=extractable,
                turns=state.recent_turns(settings.extraction_history_turns),
                function_name=spec.name,
                today=today,
            )
            extraction_failed = result.failed
            for name, value in result.values.items():
                if name not in extractable or name in arguments:
                    continue
                try:
                    value = coerce_value(spec.param(name), value)
                except (TypeError, ValueError):
                    logger.info(f"{spec.name}: discarding unusable extracted {name}")
                    continue
                arguments[name] = value
                sources[name] = "extraction"
                learned[name] = value
            missing = self._missing(spec, arguments)

        if missing:
            logger.info(f"{spec.name}: missing required {missing}")
            return MissingRequired(
                function_name=spec.name,
                missing=missing,
                labels=[spec.param(name).ask_label for name in missing],
                extraction_failed=extraction_failed,
            )

        # Defaults for optional parameters
        for param in spec.optional:
            if param.name in arguments or not param.has_default:
                continue
            if param.default_from:
                arguments[param.name] = await self._backend.resolve_default(
                    state.organization_id, param.default_from
                )
            else:
                arguments[param.name] = param.default
            sources[param.name] = "default"

        logger.debug(f"{spec.name}: resolved with sources {sources}")
        return ResolvedCall(
            function_name=spec.name,
            arguments=arguments,
            sources=sources,
            learned=learned,
        )

    @staticmethod
    def _fill_from_state(
        name: str,
        bindings: dict[str, StateGetter],
        state: ConversationState,
        arguments: dict[str, Any],
        sources: dict[str, str],
    ) -> None:
        if name in arguments or name not in bindings:
            return
        value = bindings[name](state)
        if value is None or value == "":
            return
        arguments[name] = value
        sources[name] = "state"

    @staticmethod
    def _missing(spec: FunctionSpec, arguments: dict[str, Any]) -> list[str]:
        missing = [p.name for p in spec.required if p.name not in arguments]
        if spec.requires_any and not any(n in arguments for n in spec.requires_any):
            missing += [n for n in spec.requires_any if n not in missing]
        return missing
