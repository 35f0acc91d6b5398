"""
Intelligence Layer Module

Provides conversation state, utterance heuristics and bounded parameter
extraction for the booking orchestrator.

Usage:
    from app.core.intelligence import extract_facts, get_state_store

    facts = extract_facts("book a cleaning for Jane Doe tomorrow morning")
    print(facts.first_name)  # "Jane"

    store = get_state_store()
    state = await store.get("org-1", "call-42")
"""

# Slot Extraction
from app.core.intelligence.slots.types import (
    AppointmentType,
    CallerIntent,
    ExtractionResult,
    UtteranceFacts,
)
from app.core.intelligence.slots.heuristics import extract_facts, match_offered_slot
from app.core.intelligence.slots.extractor import (
    ParameterExtractor,
    get_parameter_extractor,
)

# Conversation State
from app.core.intelligence.session.models import (
    UNSET,
    AppointmentIntent,
    ConversationState,
    PatientInfo,
    PendingAction,
)
from app.core.intelligence.session.manager import ConversationStateStore, get_state_store

__all__ = [
    # Slots
    "AppointmentType",
    "CallerIntent",
    "ExtractionResult",
    "UtteranceFacts",
    "extract_facts",
    "match_offered_slot",
    "ParameterExtractor",
    "get_parameter_extractor",
    # Conversation State
    "UNSET",
    "AppointmentIntent",
    "ConversationState",
    "PatientInfo",
    "PendingAction",
    "ConversationStateStore",
    "get_state_store",
]
