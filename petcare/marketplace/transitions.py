"""Legal status transitions for bookings and invoices."""

from __future__ import annotations

from .errors import AuthorizationError, IllegalStatusTransitionError

CLIENT = "client"
SITTER = "sitter"
ADMIN = "admin"
ROLES = (CLIENT, SITTER, ADMIN)

# Booking statuses
PENDING = "PENDING"
CONFIRMED = "CONFIRMED"
IN_PROGRESS = "IN_PROGRESS"
COMPLETED = "COMPLETED"
CANCELLED = "CANCELLED"
BOOKING_STATUSES = (PENDING, CONFIRMED, IN_PROGRESS, COMPLETED, CANCELLED)
BOOKING_TERMINAL = frozenset({COMPLETED, CANCELLED})

# Invoice statuses
DRAFT = "DRAFT"
SENT = "SENT"
PARTIALLY_PAID = "PARTIALLY_PAID"
PAID = "PAID"
OVERDUE = "OVERDUE"
REFUNDED = "REFUNDED"
INVOICE_STATUSES = (DRAFT, SENT, PARTIALLY_PAID, PAID, OVERDUE, CANCELLED, REFUNDED)
INVOICE_FINAL = frozenset({PAID, CANCELLED, REFUNDED})

# (from, to) -> roles allowed to request it
BOOKING_TRANSITIONS: dict[tuple[str, str], frozenset[str]] = {
    (PENDING, CONFIRMED): frozenset({SITTER, ADMIN}),
    (PENDING, CANCELLED): frozenset({CLIENT, ADMIN}),
    (CONFIRMED, IN_PROGRESS): frozenset({SITTER, ADMIN}),
    (CONFIRMED, CANCELLED): frozenset({CLIENT, ADMIN}),
    (IN_PROGRESS, COMPLETED): frozenset({SITTER, ADMIN}),
    (IN_PROGRESS, CANCELLED): frozenset({ADMIN}),
}

INVOICE_TRANSITIONS: dict[str, frozenset[str]] = {
    DRAFT: frozenset({SENT, CANCELLED}),
    SENT: frozenset({PAID, PARTIALLY_PAID, CANCELLED}),
    PARTIALLY_PAID: frozenset({PAID, CANCELLED}),
    PAID: frozenset({REFUNDED}),
    OVERDUE: frozenset(),
    CANCELLED: frozenset(),
    REFUNDED: frozenset(),
}


def booking_transition_allowed(current: str, target: str) -> bool:
    return (current, target) in BOOKING_TRANSITIONS


def assert_booking_transition(current: str, target: str, role: str) -> None:
    """Raise unless ``role`` may move a booking from ``current`` to ``target``.

    A pair missing from the table is a conflict whatever the role; a known pair
    requested by the wrong role is an authorization failure.
    """

    allowed_roles = BOOKING_TRANSITIONS.get((current, target))
    if allowed_roles is None:
        raise IllegalStatusTransitionError("Booking", current, target)
    if role not in allowed_roles:
        raise AuthorizationError(
            f"Role {role} cannot move a booking from {current} to {target}",
            details={"from": current, "to": target, "role": role},
        )


def invoice_transition_allowed(current: str, target: str) -> bool:
    return target in INVOICE_TRANSITIONS.get(current, frozenset())


def assert_invoice_transition(current: str, target: str) -> None:
    if not invoice_transition_allowed(current, target):
        raise IllegalStatusTransitionError("Invoice", current, target)
