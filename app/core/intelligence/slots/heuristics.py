"""
Regex heuristics for caller utterances.

Cheap, deterministic extraction run on every user turn before any LLM
call: patient name, phone, birthdate, email, appointment type, preferred
date and time, booking intent. Also matches a caller's reply against the
slots currently on offer.

Heuristics only ever add facts. Anything they miss is left to the
parameter resolver's LLM extraction.
"""

import logging
import re
from datetime import date, timedelta
from typing import Optional

from app.core.scheduling.types import SlotCandidate
from .types import AppointmentType, CallerIntent, UtteranceFacts

logger = logging.getLogger(__name__)


MONTHS = {
    "jan": 1, "january": 1, "feb": 2, "february": 2, "mar": 3, "march": 3,
    "apr": 4, "april": 4, "may": 5, "jun": 6, "june": 6, "jul": 7, "july": 7,
    "aug": 8, "august": 8, "sep": 9, "sept": 9, "september": 9, "oct": 10,
    "october": 10, "nov": 11, "november": 11, "dec": 12, "december": 12,
}

WEEKDAYS = {
    "monday": 0, "tuesday": 1, "wednesday": 2, "thursday": 3,
    "friday": 4, "saturday": 5, "sunday": 6,
}

# Capitalized words that follow "for"/"this is" but are not names
NOT_NAMES = {
    "Doctor", "Dr", "Tomorrow", "Today", "Next", "This", "The", "A", "An",
    "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday",
    "January", "February", "March", "April", "May", "June", "July", "August",
    "September", "October", "November", "December", "Morning", "Afternoon",
    "Evening", "Me", "My", "Cleaning", "Checkup", "Yes", "No", "Hi", "Hello",
}

_NAME = r"([A-Z][a-zA-Z'\-]+)"

FULL_NAME_PATTERNS = [
    re.compile(rf"(?i:\bmy name is|\bname's|\bthe name is)\s+{_NAME}\s+{_NAME}"),
    re.compile(rf"(?i:\bthis is|\bi'm|\bi am|\bit's)\s+{_NAME}\s+{_NAME}\b"),
    re.compile(rf"(?i:\bfor|\bpatient is|\bpatient)\s+{_NAME}\s+{_NAME}\b"),
    re.compile(rf"\b{_NAME}\s+{_NAME}(?i:\s+here)\b"),
]

FIRST_NAME_PATTERNS = [
    re.compile(rf"(?i:\bmy name is|\bname's)\s+{_NAME}\b"),
    re.compile(rf"(?i:\bthis is)\s+{_NAME}\b"),
]

PHONE_PATTERN = re.compile(
    r"(?<![\d\-/])"
    r"(?:\+?1[\s.\-]?)?"
    r"(?:\(?(\d{3})\)?[\s.\-]?)?"
    r"(\d{3})[\s.\-](\d{4})"
    r"(?![\d\-/])"
)
PLAIN_PHONE_PATTERN = re.compile(r"(?<!\d)(\d{10})(?!\d)")

EMAIL_PATTERN = re.compile(r"\b[\w.+\-]+@[\w\-]+\.[\w.\-]+\b")

ISO_DATE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")
US_DATE = re.compile(r"\b(\d{1,2})/(\d{1,2})(?:/(\d{2,4}))?\b")
MONTH_DAY = re.compile(
    r"\b(" + "|".join(sorted(MONTHS, key=len, reverse=True)) + r")\.?\s+(\d{1,2})(?:st|nd|rd|th)?"
    r"(?:,?\s+(\d{4}))?\b",
    re.IGNORECASE,
)
DAY_MONTH = re.compile(
    r"\b(\d{1,2})(?:st|nd|rd|th)?\s+(?:of\s+)?("
    + "|".join(sorted(MONTHS, key=len, reverse=True)) + r")\b(?:,?\s+(\d{4}))?",
    re.IGNORECASE,
)

BIRTH_KEYWORDS = re.compile(r"\b(born|birth|birthday|birthdate|dob|d\.o\.b)\b", re.IGNORECASE)

CLOCK_TIME = re.compile(
    r"\b(\d{1,2})(?::(\d{2}))?\s*(a\.?m\.?|p\.?m\.?)(?![a-z])|\b(\d{1,2}):(\d{2})\b",
    re.IGNORECASE,
)
OCLOCK = re.compile(r"\b(\d{1,2})\s*o'?clock\b", re.IGNORECASE)

APPOINTMENT_TYPE_PATTERNS: list[tuple[AppointmentType, re.Pattern]] = [
    (AppointmentType.ROOT_CANAL, re.compile(r"\broot\s*canal", re.IGNORECASE)),
    (AppointmentType.EMERGENCY, re.compile(
        r"\b(emergency|toothache|tooth ache|severe pain|in pain|broken tooth|chipped|swollen|swelling)\b",
        re.IGNORECASE,
    )),
    (AppointmentType.EXTRACTION, re.compile(
        r"\b(extraction|extract|pull(ed)? (a |my )?tooth|wisdom tooth|wisdom teeth)\b", re.IGNORECASE
    )),
    (AppointmentType.CLEANING, re.compile(r"\b(cleaning|clean my teeth|hygiene)\b", re.IGNORECASE)),
    (AppointmentType.CHECKUP, re.compile(r"\b(check[\s\-]?up|exam|examination)\b", re.IGNORECASE)),
    (AppointmentType.FILLING, re.compile(r"\b(filling|cavity|cavities)\b", re.IGNORECASE)),
    (AppointmentType.CROWN, re.compile(r"\bcrowns?\b", re.IGNORECASE)),
    (AppointmentType.WHITENING, re.compile(r"\b(whitening|whiten)\b", re.IGNORECASE)),
    (AppointmentType.CONSULTATION, re.compile(r"\b(consultation|consult)\b", re.IGNORECASE)),
]

INTENT_PATTERNS: list[tuple[CallerIntent, re.Pattern]] = [
    (CallerIntent.RESCHEDULE, re.compile(
        r"\b(reschedul\w*|move my appointment|change my appointment|different time|push (it|my appointment) back)\b",
        re.IGNORECASE,
    )),
    (CallerIntent.CANCEL, re.compile(r"\b(cancel\w*|call off)\b", re.IGNORECASE)),
    (CallerIntent.CHECK, re.compile(
        r"\b(when is my (next )?appointment|check my appointment|do i have an appointment|confirm my appointment)\b",
        re.IGNORECASE,
    )),
    (CallerIntent.BOOK, re.compile(
        r"\b(book|schedule|make an appointment|set up an appointment|get an appointment|"
        r"need an appointment|want an appointment|come in|see the dentist|see a dentist)\b",
        re.IGNORECASE,
    )),
]

NEW_PATIENT = re.compile(r"\b(new patient|first time|never been (there|here|in)|haven't been (there|here) before)\b", re.IGNORECASE)
EXISTING_PATIENT = re.compile(r"\b(existing patient|current patient|returning patient|been (there|here) before)\b", re.IGNORECASE)
REIDENTIFY = re.compile(
    r"\b(someone else|somebody else|different person|not for me|not me|"
    r"for my (son|daughter|wife|husband|mother|mom|father|dad|child|kid|partner))\b",
    re.IGNORECASE,
)

ORDINALS = {
    "first": 0, "1st": 0, "second": 1, "2nd": 1, "third": 2, "3rd": 2,
    "fourth": 3, "4th": 3, "fifth": 4, "5th": 4,
}
ORDINAL_PATTERN = re.compile(r"\b(first|1st|second|2nd|third|3rd|fourth|4th|fifth|5th|last)\b", re.IGNORECASE)
OPTION_NUMBER = re.compile(r"\b(?:option|number|choice|slot|#)\s*#?(\d)\b", re.IGNORECASE)
NEGATION = re.compile(
    r"\b(no|nope|none|neither|not|don't|doesn't|can't|cannot|won't|other)\b", re.IGNORECASE
)
AFFIRMATION = re.compile(
    r"\b(yes|yeah|yep|yup|sure|ok|okay|sounds good|perfect|that works|works for me|"
    r"book it|let's do (it|that)|please do|great|that one|correct)\b",
    re.IGNORECASE,
)
WEEKDAY_PATTERN = re.compile(r"\b(" + "|".join(WEEKDAYS) + r")\b", re.IGNORECASE)
CLAUSE_SPLIT = re.compile(r"[,;!?]|\bbut\b", re.IGNORECASE)
CLAUSE_NEGATION = re.compile(r"\b(not|don't|doesn't|can't|cannot|won't)\b", re.IGNORECASE)


# === Field extractors ===

def extract_name(text: str) -> tuple[Optional[str], Optional[str]]:
    """Return (first_name, last_name) from phrases like "my name is Jane Doe"."""
    for pattern in FULL_NAME_PATTERNS:
        for match in pattern.finditer(text):
            first, last = match.group(1), match.group(2)
            if first in NOT_NAMES or last in NOT_NAMES:
                continue
            return first, last

    for pattern in FIRST_NAME_PATTERNS:
        match = pattern.search(text)
        if match and match.group(1) not in NOT_NAMES:
            return match.group(1), None

    return None, None


def extract_phone(text: str) -> Optional[str]:
    """Find a phone number; returns digits grouped with dashes."""
    match = PHONE_PATTERN.search(text)
    if match:
        area, prefix, line = match.groups()
        return f"{area}-{prefix}-{line}" if area else f"{prefix}-{line}"

    match = PLAIN_PHONE_PATTERN.search(text)
    if match:
        digits = match.group(1)
        return f"{digits[:3]}-{digits[3:6]}-{digits[6:]}"

    return None


def extract_email(text: str) -> Optional[str]:
    match = EMAIL_PATTERN.search(text)
    return match.group(0).lower() if match else None


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _full_dates(text: str) -> list[tuple[date, tuple[int, int]]]:
    """All dates in the text that carry a year, with their spans."""
    found = []
    for match in ISO_DATE.finditer(text):
        parsed = _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        if parsed:
            found.append((parsed, match.span()))
    for match in US_DATE.finditer(text):
        if not match.group(3):
            continue
        year = int(match.group(3))
        if year < 100:
            year += 1900 if year > 30 else 2000
        parsed = _safe_date(year, int(match.group(1)), int(match.group(2)))
        if parsed:
            found.append((parsed, match.span()))
    for match in MONTH_DAY.finditer(text):
        if not match.group(3):
            continue
        parsed = _safe_date(int(match.group(3)), MONTHS[match.group(1).lower()], int(match.group(2)))
        if parsed:
            found.append((parsed, match.span()))
    for match in DAY_MONTH.finditer(text):
        if not match.group(3):
            continue
        parsed = _safe_date(int(match.group(3)), MONTHS[match.group(2).lower()], int(match.group(1)))
        if parsed:
            found.append((parsed, match.span()))
    return found


def extract_birthdate(text: str, today: date) -> tuple[Optional[str], Optional[tuple[int, int]]]:
    """
    Find a date of birth.

    Accepted when the utterance mentions birth/DOB, or when the date is
    clearly in the past (at least two years ago).

    Returns:
        (YYYY-MM-DD, span of the matched text) or (None, None)
    """
    has_keyword = BIRTH_KEYWORDS.search(text) is not None
    for parsed, span in _full_dates(text):
        if parsed >= today:
            continue
        if has_keyword or parsed.year <= today.year - 2:
            return parsed.isoformat(), span
    return None, None


def _next_weekday(today: date, weekday: int) -> date:
    """Upcoming occurrence of a weekday; "Monday" said on a Monday is a week out."""
    days_ahead = (weekday - today.weekday()) % 7 or 7
    return today + timedelta(days=days_ahead)


def _upcoming(today: date, month: int, day: int) -> Optional[date]:
    parsed = _safe_date(today.year, month, day)
    if parsed and parsed < today:
        parsed = _safe_date(today.year + 1, month, day)
    return parsed


def extract_preferred_date(text: str, today: date) -> Optional[str]:
    """Resolve today/tomorrow/weekday/"December 15"/"12/15" to YYYY-MM-DD."""
    lowered = text.lower()

    if re.search(r"\bday after tomorrow\b", lowered):
        return (today + timedelta(days=2)).isoformat()
    if re.search(r"\btomorrow\b", lowered):
        return (today + timedelta(days=1)).isoformat()
    if re.search(r"\b(today|this (morning|afternoon|evening))\b", lowered):
        return today.isoformat()

    weekday = _weekday_mentioned(text)
    if weekday is not None:
        return _next_weekday(today, weekday).isoformat()

    for parsed, _ in _full_dates(text):
        if parsed >= today:
            return parsed.isoformat()

    match = MONTH_DAY.search(text)
    if match and not match.group(3):
        parsed = _upcoming(today, MONTHS[match.group(1).lower()], int(match.group(2)))
        if parsed:
            return parsed.isoformat()

    match = DAY_MONTH.search(text)
    if match and not match.group(3):
        parsed = _upcoming(today, MONTHS[match.group(2).lower()], int(match.group(1)))
        if parsed:
            return parsed.isoformat()

    match = US_DATE.search(text)
    if match and not match.group(3):
        parsed = _upcoming(today, int(match.group(1)), int(match.group(2)))
        if parsed:
            return parsed.isoformat()

    return None


def extract_clock_time(text: str) -> Optional[str]:
    """Find an explicit clock time ("9:30", "2pm", "3 o'clock") as HH:MM."""
    match = CLOCK_TIME.search(text)
    if match:
        if match.group(1):
            hour = int(match.group(1))
            minute = int(match.group(2) or 0)
            meridiem = match.group(3).lower().replace(".", "")
            if meridiem == "pm" and hour < 12:
                hour += 12
            elif meridiem == "am" and hour == 12:
                hour = 0
        else:
            hour = int(match.group(4))
            minute = int(match.group(5))
            # Clinic hours: a bare "2:30" means the afternoon
            if 1 <= hour <= 6:
                hour += 12
        if 0 <= hour <= 23 and 0 <= minute <= 59:
            return f"{hour:02d}:{minute:02d}"

    match = OCLOCK.search(text)
    if match:
        hour = int(match.group(1))
        if 1 <= hour <= 6:
            hour += 12
        if 0 <= hour <= 23:
            return f"{hour:02d}:00"

    return None


def extract_preferred_time(text: str) -> Optional[str]:
    """Explicit clock time, else morning/afternoon/evening."""
    clock = extract_clock_time(text)
    if clock:
        return clock

    lowered = text.lower()
    for period in ("morning", "afternoon", "evening"):
        if re.search(rf"\b{period}\b", lowered):
            return period
    if re.search(r"\b(after work|after 5|tonight)\b", lowered):
        return "evening"
    if re.search(r"\b(lunch|midday|noon)\b", lowered):
        return "afternoon"
    return None


def extract_appointment_type(text: str) -> Optional[AppointmentType]:
    for appointment_type, pattern in APPOINTMENT_TYPE_PATTERNS:
        if pattern.search(text):
            return appointment_type
    return None


def facts_from_entities(entities: dict) -> UtteranceFacts:
    """
    Normalize the fragments the intent router pulled out of an utterance.

    Values that do not parse (a date that is not YYYY-MM-DD, an unknown
    visit type) are dropped rather than guessed at.
    """
    facts = UtteranceFacts()

    name = str(entities.get("patient_name") or "").split()
    if name and name[0].capitalize() not in NOT_NAMES:
        facts.first_name = name[0]
        if len(name) > 1:
            facts.last_name = name[-1]

    if entities.get("phone"):
        facts.phone = extract_phone(str(entities["phone"]))

    if entities.get("date"):
        try:
            facts.preferred_date = date.fromisoformat(str(entities["date"])).isoformat()
        except ValueError:
            logger.debug(f"Ignoring router date {entities['date']!r}")

    if entities.get("time"):
        facts.preferred_time = extract_preferred_time(str(entities["time"]))

    if entities.get("appointment_type"):
        facts.appointment_type = extract_appointment_type(str(entities["appointment_type"]))

    return facts


def extract_intent(text: str) -> Optional[CallerIntent]:
    for intent, pattern in INTENT_PATTERNS:
        if pattern.search(text):
            return intent
    return None


def extract_facts(text: str, today: Optional[date] = None) -> UtteranceFacts:
    """
    Run every heuristic over one utterance.

    Args:
        text: Caller's utterance
        today: Reference date for relative dates (defaults to date.today())

    Returns:
        UtteranceFacts with whatever could be found
    """
    today = today or date.today()
    facts = UtteranceFacts()

    if not text or not text.strip():
        return facts

    facts.first_name, facts.last_name = extract_name(text)
    facts.phone = extract_phone(text)
    facts.email = extract_email(text)

    birthdate, span = extract_birthdate(text, today)
    facts.birthdate = birthdate
    remaining = text if span is None else text[:span[0]] + " " + text[span[1]:]

    facts.appointment_type = extract_appointment_type(remaining)
    facts.preferred_date = extract_preferred_date(remaining, today)
    facts.preferred_time = extract_preferred_time(remaining)
    facts.intent = extract_intent(remaining)

    if NEW_PATIENT.search(text):
        facts.is_new_patient = True
    elif EXISTING_PATIENT.search(text):
        facts.is_new_patient = False

    facts.wants_reidentify = REIDENTIFY.search(text) is not None

    if facts.has_any():
        logger.debug(
            f"Heuristics found: name={'yes' if facts.first_name else 'no'}, "
            f"phone={'yes' if facts.phone else 'no'}, date={facts.preferred_date}, "
            f"time={facts.preferred_time}, intent={facts.intent}"
        )

    return facts


# === Offered slot selection ===

def _provider_mentioned(text: str, slot: SlotCandidate) -> bool:
    parts = re.sub(r"^(dr\.?|doctor)\s+", "", slot.provider_name or "", flags=re.IGNORECASE).split()
    if not parts:
        return False
    surname = parts[-1].lower()
    return re.search(rf"\b{re.escape(surname)}\b", text.lower()) is not None


def _weekday_mentioned(text: str) -> Optional[int]:
    """Earliest weekday named in the text."""
    match = WEEKDAY_PATTERN.search(text)
    return WEEKDAYS[match.group(1).lower()] if match else None


def _narrow(text: str, candidates: list[SlotCandidate]) -> list[SlotCandidate]:
    """Disambiguate several candidates by weekday, then provider name."""
    if len(candidates) > 1:
        weekday = _weekday_mentioned(text)
        if weekday is not None:
            by_day = [c for c in candidates if c.start.weekday() == weekday]
            candidates = by_day or candidates
    if len(candidates) > 1:
        by_provider = [c for c in candidates if _provider_mentioned(text, c)]
        candidates = by_provider or candidates
    return candidates


def _match_reference(
    clause: str,
    offered: list[SlotCandidate],
) -> tuple[bool, Optional[SlotCandidate]]:
    """
    Resolve an explicit reference in one clause.

    Returns:
        (clause_has_reference, matched_slot)
    """
    match = OPTION_NUMBER.search(clause)
    if match:
        index = int(match.group(1)) - 1
        return True, offered[index] if 0 <= index < len(offered) else None

    match = ORDINAL_PATTERN.search(clause)
    if match:
        word = match.group(1).lower()
        index = len(offered) - 1 if word == "last" else ORDINALS[word]
        return True, offered[index] if index < len(offered) else None

    clock = extract_clock_time(clause)
    if clock:
        by_time = [c for c in offered if c.start.strftime("%H:%M") == clock]
        if not by_time and clock >= "13:00":
            # A bare "1:30" was read as afternoon; try the morning reading too
            hour, minute = clock.split(":")
            morning = f"{int(hour) - 12:02d}:{minute}"
            by_time = [c for c in offered if c.start.strftime("%H:%M") == morning]
        by_time = _narrow(clause, by_time)
        return True, by_time[0] if len(by_time) == 1 else None

    by_provider = [c for c in offered if _provider_mentioned(clause, c)]
    if by_provider:
        by_provider = _narrow(clause, by_provider)
        return True, by_provider[0] if len(by_provider) == 1 else None

    return False, None


def match_offered_slot(
    text: str,
    offered: list[SlotCandidate],
) -> Optional[SlotCandidate]:
    """
    Match the caller's reply to exactly one offered slot.

    Recognizes ordinals ("the second one", "option 2", "the last one"),
    explicit times ("the 9:30 one", "2pm"), provider names when they pick
    out a single slot, and a bare affirmation when only one slot was
    offered. Ambiguous or negated replies ("not the first one") match
    nothing.
    """
    if not offered or not text or not text.strip():
        return None

    # "no, the second one": the last clause with a reference wins
    clauses = [c for c in CLAUSE_SPLIT.split(text) if c and c.strip()]
    for clause in reversed(clauses):
        has_reference, slot = _match_reference(clause, offered)
        if not has_reference:
            continue
        if CLAUSE_NEGATION.search(clause):
            return None
        return slot

    if NEGATION.search(text):
        return None

    if len(offered) == 1 and AFFIRMATION.search(text):
        return offered[0]

    return None
