"""
Slot/availability planner.

Computes free appointment slots from provider schedules minus existing
appointments, and answers the final conflict check used before any
booking commit.
"""

import logging
from datetime import datetime, time, timedelta
from typing import Callable, Optional

from app.config import settings
from app.core.scheduling.backend import BookingBackend, NotFoundError
from app.core.scheduling.types import (
    Appointment,
    Operatory,
    Provider,
    ScheduleBlock,
    SlotCandidate,
    overlaps,
)

logger = logging.getLogger(__name__)


# Time-of-day windows for caller preferences
TIME_WINDOWS: dict[str, tuple[time, time]] = {
    "morning": (time(0, 0), time(12, 0)),
    "afternoon": (time(12, 0), time(17, 0)),
    "evening": (time(17, 0), time(23, 59, 59)),
}


def _subtract(
    window: tuple[datetime, datetime],
    busy: list[tuple[datetime, datetime]],
) -> list[tuple[datetime, datetime]]:
    """Remove busy intervals from a window, returning the free pieces in order."""
    free = []
    cursor, window_end = window
    for busy_start, busy_end in sorted(busy):
        if busy_end <= cursor or busy_start >= window_end:
            continue
        if busy_start > cursor:
            free.append((cursor, busy_start))
        cursor = max(cursor, busy_end)
        if cursor >= window_end:
            break
    if cursor < window_end:
        free.append((cursor, window_end))
    return free


def matches_time_preference(start: datetime, time_preference: Optional[str]) -> bool:
    """Check a slot start against 'morning'/'afternoon'/'evening' or 'HH:MM'."""
    if not time_preference:
        return True
    preference = time_preference.strip().lower()
    if preference in TIME_WINDOWS:
        window_start, window_end = TIME_WINDOWS[preference]
        return window_start <= start.time() < window_end
    try:
        wanted = time.fromisoformat(preference)
    except ValueError:
        return True
    return start.time().replace(second=0, microsecond=0) == wanted.replace(second=0, microsecond=0)


class SlotPlanner:
    """
    Finds free slots for an organization.

    Algorithm:
    1. Enumerate active providers (or only the requested one)
    2. For each provider, take schedule blocks intersecting the range
    3. Subtract non-cancelled appointments for that provider or operatory
    4. Slice the remaining free intervals into duration-sized candidates
    5. Order by start time, then provider id
    """

    def __init__(
        self,
        backend: BookingBackend,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the planner.

        Args:
            backend: Booking operations used to read providers, schedules
                and appointments
            clock: Returns "now" in clinic-local time. Slots starting
                before now are never offered.
        """
        self._backend = backend
        self._clock = clock or datetime.now

    async def find_slots(
        self,
        organization_id: str,
        date_start: datetime,
        date_end: datetime,
        provider_id: Optional[str] = None,
        operatory_id: Optional[str] = None,
        duration_minutes: Optional[int] = None,
        time_preference: Optional[str] = None,
    ) -> list[SlotCandidate]:
        """
        Find free slots in [date_start, date_end).

        An empty list means fully booked; it is not an error.

        Raises:
            NotFoundError: The requested provider or operatory does not exist
                for the organization
        """
        duration = duration_minutes or settings.default_appointment_minutes
        if duration <= 0:
            raise ValueError("duration_minutes must be positive")
        if date_end <= date_start:
            return []

        providers = await self._select_providers(organization_id, provider_id)
        operatories = await self._backend.list_operatories(organization_id)
        default_operatory = self._check_operatory(operatories, operatory_id)

        schedules = await self._backend.list_schedules(
            organization_id, date_start, date_end, provider_id=provider_id
        )
        appointments = [
            a for a in await self._backend.list_appointments(
                organization_id, date_start=date_start, date_end=date_end
            )
            if a.is_active
        ]

        not_before = max(date_start, self._clock())
        step = timedelta(minutes=duration)
        candidates: list[SlotCandidate] = []

        for provider in providers:
            for block in schedules:
                if block.provider_id != provider.id:
                    continue
                if operatory_id and block.operatory_id and block.operatory_id != operatory_id:
                    continue

                block_operatory = block.operatory_id or default_operatory
                window = (max(block.start, not_before), min(block.end, date_end))
                if window[0] >= window[1]:
                    continue

                busy = [
                    (a.start, a.end) for a in appointments
                    if a.provider_id == provider.id
                    or (block_operatory is not None and a.operatory_id == block_operatory)
                ]

                for free_start, free_end in _subtract(window, busy):
                    cursor = free_start
                    while cursor + step <= free_end:
                        if matches_time_preference(cursor, time_preference):
                            candidates.append(
                                SlotCandidate(
                                    start=cursor,
                                    provider_id=provider.id,
                                    operatory_id=block_operatory,
                                    duration_minutes=duration,
                                    provider_name=provider.name,
                                )
                            )
                        cursor += step

        candidates.sort(key=lambda c: (c.start, c.provider_id))
        logger.info(
            f"Found {len(candidates)} slots for org={organization_id} "
            f"range={date_start.isoformat()}..{date_end.isoformat()}"
        )
        return candidates

    async def has_conflict(
        self,
        organization_id: str,
        provider_id: str,
        operatory_id: Optional[str],
        start: datetime,
        duration_minutes: int,
        exclude_appointment_id: Optional[str] = None,
    ) -> bool:
        """True when the interval overlaps a non-cancelled appointment for
        the same provider or the same operatory."""
        end = start + timedelta(minutes=duration_minutes)
        appointments = await self._backend.list_appointments(
            organization_id,
            date_start=start - timedelta(days=1),
            date_end=end + timedelta(days=1),
        )
        return any(
            self._blocks(a, provider_id, operatory_id, start, end, exclude_appointment_id)
            for a in appointments
        )

    async def evaluate(
        self,
        organization_id: str,
        candidate: SlotCandidate,
        exclude_appointment_id: Optional[str] = None,
    ) -> SlotCandidate:
        """
        Re-check a candidate against current data.

        Returns a copy with feasible/reason set:
            conflict          overlaps an existing appointment
            outside_schedule  not inside one of the provider's schedule blocks
        """
        result = SlotCandidate(
            start=candidate.start,
            provider_id=candidate.provider_id,
            operatory_id=candidate.operatory_id,
            duration_minutes=candidate.duration_minutes,
            provider_name=candidate.provider_name,
        )

        if await self.has_conflict(
            organization_id,
            candidate.provider_id,
            candidate.operatory_id,
            candidate.start,
            candidate.duration_minutes,
            exclude_appointment_id=exclude_appointment_id,
        ):
            result.feasible = False
            result.reason = "conflict"
            return result

        blocks = await self._backend.list_schedules(
            organization_id,
            candidate.start,
            candidate.end,
            provider_id=candidate.provider_id,
        )
        if not any(self._covers(b, candidate) for b in blocks):
            result.feasible = False
            result.reason = "outside_schedule"

        return result

    async def _select_providers(
        self,
        organization_id: str,
        provider_id: Optional[str],
    ) -> list[Provider]:
        providers = [
            p for p in await self._backend.list_providers(organization_id) if p.is_active
        ]
        if provider_id:
            providers = [p for p in providers if p.id == provider_id]
            if not providers:
                raise NotFoundError(
                    f"Provider {provider_id} not found",
                    operation="slots.find",
                    entity="provider",
                )
        return sorted(providers, key=lambda p: p.id)

    def _check_operatory(
        self,
        operatories: list[Operatory],
        operatory_id: Optional[str],
    ) -> Optional[str]:
        """Validate a requested operatory; otherwise pick the first active one
        for schedule blocks not pinned to a room."""
        active = sorted((o for o in operatories if o.is_active), key=lambda o: o.id)
        if operatory_id:
            if not any(o.id == operatory_id for o in active):
                raise NotFoundError(
                    f"Operatory {operatory_id} not found",
                    operation="slots.find",
                    entity="operatory",
                )
            return operatory_id
        return active[0].id if active else None

    @staticmethod
    def _blocks(
        appointment: Appointment,
        provider_id: str,
        operatory_id: Optional[str],
        start: datetime,
        end: datetime,
        exclude_appointment_id: Optional[str],
    ) -> bool:
        if not appointment.is_active or appointment.id == exclude_appointment_id:
            return False
        same_resource = appointment.provider_id == provider_id or (
            operatory_id is not None and appointment.operatory_id == operatory_id
        )
        return same_resource and overlaps(start, end, appointment.start, appointment.end)

    @staticmethod
    def _covers(block: ScheduleBlock, candidate: SlotCandidate) -> bool:
        if block.operatory_id and candidate.operatory_id and block.operatory_id != candidate.operatory_id:
            return False
        return block.start <= candidate.start and candidate.end <= block.end


def pick_offers(candidates: list[SlotCandidate], limit: int) -> list[SlotCandidate]:
    """
    Choose which candidates to read out to the caller.

    Prefers distinct start times (earliest provider id for each) so a reply
    like "the 9:30 one" names exactly one offer; repeats a start time only
    when there are not enough distinct ones.
    """
    if limit <= 0:
        return []
    offers: list[SlotCandidate] = []
    seen_starts = set()
    for candidate in candidates:
        if candidate.start not in seen_starts:
            offers.append(candidate)
            seen_starts.add(candidate.start)
        if len(offers) == limit:
            return offers
    for candidate in candidates:
        if len(offers) == limit:
            break
        if candidate not in offers:
            offers.append(candidate)
    offers.sort(key=lambda c: (c.start, c.provider_id))
    return offers
