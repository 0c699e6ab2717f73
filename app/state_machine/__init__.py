"""
Booking state machine
"""
from app.state_machine.booking_states import (
    Actor,
    BookingAction,
    BookingTransition,
    BOOKING_ACTIONS,
    BOOKING_TRANSITIONS,
    TERMINAL_STATUSES,
    allowed_actions,
    can_transition,
    get_transition,
    is_terminal,
)

__all__ = [
    "Actor",
    "BookingAction",
    "BookingTransition",
    "BOOKING_ACTIONS",
    "BOOKING_TRANSITIONS",
    "TERMINAL_STATUSES",
    "allowed_actions",
    "can_transition",
    "get_transition",
    "is_terminal",
]
