"""
Scheduling Module

Booking domain types, the booking backend adapters, slot computation,
operation execution and caller-facing reply templates.

Usage:
    from app.core.scheduling import BookingExecutor, InMemoryBookingBackend

    backend = InMemoryBookingBackend()
    backend.seed_demo("org-1")
    executor = BookingExecutor(backend)
    slots = await executor.execute("org-1", "slots.find", {"date_start": "2026-03-02"})
"""

# Domain Types
from app.core.scheduling.types import (
    Appointment,
    AppointmentStatus,
    BookingEvent,
    Operatory,
    Patient,
    Provider,
    ScheduleBlock,
    SlotCandidate,
)

# Backends
from app.core.scheduling.backend import (
    BookingBackend,
    BookingError,
    ConflictError,
    NotFoundError,
    TransientBackendError,
    ValidationFailedError,
)
from app.core.scheduling.booking_client import HttpBookingBackend
from app.core.scheduling.memory_backend import InMemoryBookingBackend

# Availability and Execution
from app.core.scheduling.availability import SlotPlanner, pick_offers
from app.core.scheduling.operations import BookingExecutor, day_range

# Replies
from app.core.scheduling.response import ReplyBuilder, format_day, format_time

__all__ = [
    # Types
    "Appointment",
    "AppointmentStatus",
    "BookingEvent",
    "Operatory",
    "Patient",
    "Provider",
    "ScheduleBlock",
    "SlotCandidate",
    # Backends
    "BookingBackend",
    "BookingError",
    "ConflictError",
    "NotFoundError",
    "TransientBackendError",
    "ValidationFailedError",
    "HttpBookingBackend",
    "InMemoryBookingBackend",
    # Availability and Execution
    "SlotPlanner",
    "pick_offers",
    "BookingExecutor",
    "day_range",
    # Replies
    "ReplyBuilder",
    "format_day",
    "format_time",
]
