"""Booking status transition table."""

from rental_engine.core.exceptions import StateConflict
from rental_engine.models.booking import BookingStatus

S = BookingStatus

TRANSITIONS: dict[BookingStatus, frozenset] = {
    S.REQUESTED: frozenset({S.AWAITING_PAYMENT, S.REJECTED, S.EXPIRED, S.CANCELLED}),
    S.AWAITING_PAYMENT: frozenset({S.PAYMENT_PROCESSING, S.EXPIRED, S.CANCELLED}),
    S.PAYMENT_PROCESSING: frozenset({S.CONFIRMED, S.AWAITING_PAYMENT}),
    S.CONFIRMED: frozenset({S.ACTIVE, S.CANCELLED}),
    S.ACTIVE: frozenset({S.COMPLETED, S.CANCELLED}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
    S.REJECTED: frozenset(),
    S.EXPIRED: frozenset(),
}

CANCELLABLE = frozenset(s for s, targets in TRANSITIONS.items() if S.CANCELLED in targets)


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in TRANSITIONS[current]


def assert_transition(current: BookingStatus, target: BookingStatus) -> None:
    if not can_transition(current, target):
        raise StateConflict(
            f"Invalid booking transition: {current.value} -> {target.value}",
            current=current.value,
            expected=current.value,
            target=target.value,
        )
