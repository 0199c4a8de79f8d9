"""Booking status state machine: allowed moves, terminal states, milestones."""
from __future__ import annotations

from booking_core.domain.value_objects import BookingStatus

TERMINAL_STATUSES = frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED})

ALLOWED_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset(
        {
            BookingStatus.PROCESSING,
            BookingStatus.CONFIRMED,
            BookingStatus.ON_HOLD,
            BookingStatus.CANCELLED,
        }
    ),
    BookingStatus.PROCESSING: frozenset(
        {BookingStatus.CONFIRMED, BookingStatus.ON_HOLD, BookingStatus.CANCELLED}
    ),
    BookingStatus.CONFIRMED: frozenset(
        {BookingStatus.COMPLETED, BookingStatus.ON_HOLD, BookingStatus.CANCELLED}
    ),
    BookingStatus.ON_HOLD: frozenset(
        {
            BookingStatus.PENDING,
            BookingStatus.PROCESSING,
            BookingStatus.CONFIRMED,
            BookingStatus.CANCELLED,
        }
    ),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}

# Timestamp stamped the first time a booking enters the status.
MILESTONES: dict[BookingStatus, str] = {
    BookingStatus.PROCESSING: "processed_at",
    BookingStatus.CONFIRMED: "confirmed_at",
    BookingStatus.COMPLETED: "completed_at",
    BookingStatus.CANCELLED: "cancelled_at",
}


def is_terminal(status: BookingStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]
