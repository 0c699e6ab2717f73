"""
Booking lifecycle - explicit transition table.

Every status change of a booking is looked up here before anything else is
touched. The table is data, not code, so it can be rendered as a diagram
(scripts/generate_state_diagrams.py) and checked by property tests.
"""
from dataclasses import dataclass
from enum import Enum

from app.db.models.booking import BookingStatus


class BookingAction(str, Enum):
    ACCEPT = "accept"
    AUTHORIZE = "authorize"            # second half of accept, after the provider answered
    REVERT_ACCEPT = "revert_accept"    # compensation when the authorization failed
    REJECT = "reject"
    CONFIRM_PAYMENT = "confirm_payment"
    CAPTURE = "capture"
    VALIDATE_PICKUP = "validate_pickup"
    VALIDATE_DELIVERY = "validate_delivery"
    COMPLETE = "complete"
    CANCEL = "cancel"
    CANCEL_BY_TRAVELER = "cancel_by_traveler"
    NO_SHOW = "no_show"
    DISPUTE = "dispute"


class Actor(str, Enum):
    SENDER = "sender"
    RECEIVER = "receiver"
    ADMIN = "admin"
    SYSTEM = "system"


@dataclass(frozen=True)
class BookingTransition:
    target: BookingStatus
    actors: frozenset[Actor]


def _t(target: BookingStatus, *actors: Actor) -> BookingTransition:
    return BookingTransition(target=target, actors=frozenset(actors))


S = BookingStatus
A = BookingAction

BOOKING_ACTIONS: dict[tuple[BookingStatus, BookingAction], BookingTransition] = {
    # Acceptance (saga: accepted is written before the provider call)
    (S.PENDING, A.ACCEPT): _t(S.ACCEPTED, Actor.RECEIVER),
    (S.ACCEPTED, A.AUTHORIZE): _t(S.PAYMENT_AUTHORIZED, Actor.SYSTEM),
    (S.ACCEPTED, A.REVERT_ACCEPT): _t(S.PENDING, Actor.SYSTEM),
    (S.PENDING, A.REJECT): _t(S.REJECTED, Actor.RECEIVER),

    # Payment
    (S.PAYMENT_AUTHORIZED, A.CONFIRM_PAYMENT): _t(S.PAYMENT_CONFIRMED, Actor.SENDER, Actor.SYSTEM),
    (S.PAYMENT_CONFIRMED, A.CAPTURE): _t(S.PAID, Actor.RECEIVER, Actor.ADMIN, Actor.SYSTEM),

    # Custody
    (S.PAID, A.VALIDATE_PICKUP): _t(S.IN_TRANSIT, Actor.RECEIVER),
    (S.IN_TRANSIT, A.VALIDATE_DELIVERY): _t(S.DELIVERED, Actor.SENDER),
    (S.DELIVERED, A.COMPLETE): _t(S.COMPLETED, Actor.SYSTEM, Actor.ADMIN),
    (S.DELIVERED, A.DISPUTE): _t(S.DISPUTED, Actor.SENDER, Actor.RECEIVER),

    # Cancellation by the sender (system: expired or provider-cancelled holds)
    (S.PENDING, A.CANCEL): _t(S.CANCELLED, Actor.SENDER),
    (S.ACCEPTED, A.CANCEL): _t(S.CANCELLED, Actor.SENDER),
    (S.PAYMENT_AUTHORIZED, A.CANCEL): _t(S.CANCELLED, Actor.SENDER, Actor.SYSTEM),
    (S.PAYMENT_CONFIRMED, A.CANCEL): _t(S.CANCELLED, Actor.SENDER, Actor.SYSTEM),

    # Cancellation of the whole trip by the traveler
    (S.PENDING, A.CANCEL_BY_TRAVELER): _t(S.CANCELLED, Actor.RECEIVER),
    (S.ACCEPTED, A.CANCEL_BY_TRAVELER): _t(S.CANCELLED, Actor.RECEIVER),
    (S.PAYMENT_AUTHORIZED, A.CANCEL_BY_TRAVELER): _t(S.CANCELLED, Actor.RECEIVER),
    (S.PAYMENT_CONFIRMED, A.CANCEL_BY_TRAVELER): _t(S.CANCELLED, Actor.RECEIVER),
    (S.PAID, A.CANCEL_BY_TRAVELER): _t(S.CANCELLED, Actor.RECEIVER),

    # Sender absent at hand-over (system: a hold release that had to be reconciled)
    (S.ACCEPTED, A.NO_SHOW): _t(S.CANCELLED, Actor.RECEIVER),
    (S.PAYMENT_AUTHORIZED, A.NO_SHOW): _t(S.CANCELLED, Actor.RECEIVER, Actor.SYSTEM),
    (S.PAYMENT_CONFIRMED, A.NO_SHOW): _t(S.CANCELLED, Actor.RECEIVER, Actor.SYSTEM),
    (S.PAID, A.NO_SHOW): _t(S.CANCELLED, Actor.RECEIVER),
}

del S, A

TERMINAL_STATUSES = frozenset({
    BookingStatus.COMPLETED,
    BookingStatus.REJECTED,
    BookingStatus.CANCELLED,
    BookingStatus.DISPUTED,
})

# Position along the happy path; terminal side branches have no rank
STATUS_ORDER: dict[BookingStatus, int] = {
    BookingStatus.PENDING: 0,
    BookingStatus.ACCEPTED: 1,
    BookingStatus.PAYMENT_AUTHORIZED: 2,
    BookingStatus.PAYMENT_CONFIRMED: 3,
    BookingStatus.PAID: 4,
    BookingStatus.IN_TRANSIT: 5,
    BookingStatus.DELIVERED: 6,
    BookingStatus.COMPLETED: 7,
}

# Transitions allowed to move backwards (saga compensation)
COMPENSATING_ACTIONS = frozenset({BookingAction.REVERT_ACCEPT})

# Flattened view: status -> reachable statuses
BOOKING_TRANSITIONS: dict[BookingStatus, list[BookingStatus]] = {}
for (_status, _action), _transition in BOOKING_ACTIONS.items():
    _targets = BOOKING_TRANSITIONS.setdefault(_status, [])
    if _transition.target not in _targets:
        _targets.append(_transition.target)
del _status, _action, _transition, _targets


def get_transition(status: BookingStatus, action: BookingAction) -> BookingTransition | None:
    return BOOKING_ACTIONS.get((status, action))


def can_transition(status: BookingStatus, action: BookingAction, actor: Actor) -> bool:
    """True when ``actor`` may perform ``action`` on a booking in ``status``"""
    transition = get_transition(status, action)
    return transition is not None and actor in transition.actors


def allowed_actions(status: BookingStatus, actor: Actor) -> list[BookingAction]:
    """Actions ``actor`` may take right now, in table order"""
    return [
        action for (from_status, action), transition in BOOKING_ACTIONS.items()
        if from_status == status and actor in transition.actors
    ]


def is_terminal(status: BookingStatus) -> bool:
    return status in TERMINAL_STATUSES
