"""
Conversation state module.

ConversationState holds per-session booking facts; ConversationStateStore
persists it (Redis, with in-memory fallback) and serializes turns.
"""

from .models import (
    UNSET,
    AppointmentIntent,
    ConversationState,
    FunctionCallRecord,
    PatientInfo,
    PendingAction,
)
from .manager import ConversationStateStore, get_state_store

__all__ = [
    # Models
    "UNSET",
    "AppointmentIntent",
    "ConversationState",
    "FunctionCallRecord",
    "PatientInfo",
    "PendingAction",
    # Store
    "ConversationStateStore",
    "get_state_store",
]
