"""Slot extraction module: regex heuristics plus bounded LLM extraction."""

from .types import AppointmentType, CallerIntent, ExtractionResult, UtteranceFacts
from .heuristics import extract_facts, match_offered_slot
from .extractor import ParameterExtractor, get_parameter_extractor

__all__ = [
    # Types
    "AppointmentType",
    "CallerIntent",
    "ExtractionResult",
    "UtteranceFacts",
    # Heuristics
    "extract_facts",
    "match_offered_slot",
    # Extractor
    "ParameterExtractor",
    "get_parameter_extractor",
]
