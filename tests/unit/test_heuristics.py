"""Tests for regex utterance heuristics and offered-slot matching."""

import pytest
from datetime import date, datetime

from app.core.intelligence.slots.heuristics import (
    extract_birthdate,
    extract_clock_time,
    extract_facts,
    extract_name,
    extract_phone,
    extract_preferred_date,
    facts_from_entities,
    match_offered_slot,
)
from app.core.intelligence.slots.types import AppointmentType, CallerIntent
from app.core.scheduling.types import SlotCandidate

TODAY = date(2026, 3, 1)  # Sunday


class TestFieldExtraction:
    """Test individual field extractors."""

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("My name is Jane Doe", ("Jane", "Doe")),
            ("Hi, this is John Smith calling", ("John", "Smith")),
            ("book a cleaning for Jane Doe", ("Jane", "Doe")),
            ("I want to see Doctor Patel", (None, None)),
            ("my name is Jane", ("Jane", None)),
        ],
    )
    def test_names(self, text, expected):
        assert extract_name(text) == expected

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("call me at 555-123-4567", "555-123-4567"),
            ("my number is (555) 123 4567", "555-123-4567"),
            ("5551234567", "555-123-4567"),
            ("no phone here", None),
        ],
    )
    def test_phone(self, text, expected):
        assert extract_phone(text) == expected

    def test_birthdate_needs_past_date(self):
        birthdate, _ = extract_birthdate("I was born on May 1, 1990", TODAY)
        assert birthdate == "1990-05-01"

        birthdate, _ = extract_birthdate("March 5, 2026 please", TODAY)
        assert birthdate is None

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("tomorrow works", "2026-03-02"),
            ("how about Monday", "2026-03-02"),
            ("next Sunday", "2026-03-08"),
            ("March 10th", "2026-03-10"),
            ("on 2026-04-01", "2026-04-01"),
            ("January 5", "2027-01-05"),
        ],
    )
    def test_preferred_date(self, text, expected):
        assert extract_preferred_date(text, TODAY) == expected

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("the 9:30 one", "09:30"),
            ("2pm", "14:00"),
            ("3 o'clock", "15:00"),
            ("12 am", "00:00"),
        ],
    )
    def test_clock_time(self, text, expected):
        assert extract_clock_time(text) == expected


class TestExtractFacts:
    """Test the combined heuristics pass."""

    def test_booking_request(self):
        facts = extract_facts("I'd like to book a cleaning for Jane Doe on Monday morning", TODAY)

        assert facts.first_name == "Jane"
        assert facts.last_name == "Doe"
        assert facts.appointment_type == AppointmentType.CLEANING
        assert facts.preferred_date == "2026-03-02"
        assert facts.preferred_time == "morning"
        assert facts.intent == CallerIntent.BOOK

    def test_birthdate_not_taken_as_appointment_date(self):
        facts = extract_facts("my date of birth is 05/01/1990", TODAY)

        assert facts.birthdate == "1990-05-01"
        assert facts.preferred_date is None

    def test_reschedule_intent(self):
        facts = extract_facts("I need to reschedule my appointment", TODAY)
        assert facts.intent == CallerIntent.RESCHEDULE

    def test_reidentify(self):
        facts = extract_facts("actually it's for my daughter", TODAY)
        assert facts.wants_reidentify is True

    def test_new_patient(self):
        facts = extract_facts("this is my first time at your office", TODAY)
        assert facts.is_new_patient is True

    def test_empty(self):
        assert extract_facts("   ", TODAY).has_any() is False

    def test_updates_omit_unknowns(self):
        facts = extract_facts("call me at 555-123-4567", TODAY)

        assert facts.patient_update()["phone"] == "555-123-4567"
        assert facts.patient_update()["first_name"] is None

    def test_router_entities_normalized(self):
        facts = facts_from_entities({
            "patient_name": "Jane Doe",
            "phone": "(555) 123 4567",
            "date": "2026-03-02",
            "time": "2:30pm",
            "appointment_type": "root canal",
        })

        assert (facts.first_name, facts.last_name) == ("Jane", "Doe")
        assert facts.phone == "555-123-4567"
        assert facts.preferred_date == "2026-03-02"
        assert facts.preferred_time == "14:30"
        assert facts.appointment_type == AppointmentType.ROOT_CANAL

    def test_unparseable_router_entities_dropped(self):
        facts = facts_from_entities({"date": "next Monday", "appointment_type": "something"})

        assert facts.preferred_date is None
        assert facts.appointment_type is None

    def test_heuristics_win_over_router(self):
        facts = extract_facts("book me for Tuesday", TODAY).fill_missing(
            facts_from_entities({"date": "2026-03-02", "time": "morning"})
        )

        assert facts.preferred_date == "2026-03-03"
        assert facts.preferred_time == "morning"
        assert facts.intent == CallerIntent.BOOK


class TestMatchOfferedSlot:
    """Test matching a caller's reply to one offered slot."""

    @pytest.fixture
    def offered(self):
        return [
            SlotCandidate(datetime(2026, 3, 2, 9, 0), "prov-1", "op-1", provider_name="Dr. Smith"),
            SlotCandidate(datetime(2026, 3, 2, 9, 30), "prov-1", "op-1", provider_name="Dr. Smith"),
            SlotCandidate(datetime(2026, 3, 2, 14, 0), "prov-2", "op-2", provider_name="Dr. Patel"),
        ]

    @pytest.mark.parametrize(
        "reply,index",
        [
            ("the 9:30 one", 1),
            ("I'll take the first one", 0),
            ("option 3", 2),
            ("the last one please", 2),
            ("2pm works", 2),
            ("with Dr. Patel", 2),
            ("no, the second one", 1),
        ],
    )
    def test_matches(self, offered, reply, index):
        assert match_offered_slot(reply, offered) is offered[index]

    @pytest.mark.parametrize(
        "reply",
        [
            "not the first one",
            "Dr. Smith please",
            "hmm, let me think",
            "yes",
            "the 11:00 one",
        ],
    )
    def test_no_match(self, offered, reply):
        assert match_offered_slot(reply, offered) is None

    def test_affirmation_with_single_offer(self, offered):
        assert match_offered_slot("yes, that works", offered[:1]) is offered[0]

    def test_nothing_offered(self):
        assert match_offered_slot("the first one", []) is None
