"""
Order lifecycle state machine.

    PENDING_ADMIN_DECISION -> ADMIN_ACCEPTED | REJECTED_BY_ADMIN | CANCELLED
    ADMIN_ACCEPTED         -> PREPARING | CANCELLED
    PREPARING              -> READY_FOR_DELIVERY | CANCELLED
    READY_FOR_DELIVERY     -> OUT_FOR_DELIVERY | CANCELLED
    OUT_FOR_DELIVERY       -> DELIVERED
    DELIVERED, REJECTED_BY_ADMIN, CANCELLED are terminal.

Pure module: shared by the API and the client library.
"""
from enum import Enum
from typing import Dict, FrozenSet

from core.exceptions import UnknownStatus


class OrderStatus(str, Enum):
    PENDING_ADMIN_DECISION = "PENDING_ADMIN_DECISION"
    ADMIN_ACCEPTED = "ADMIN_ACCEPTED"
    PREPARING = "PREPARING"
    READY_FOR_DELIVERY = "READY_FOR_DELIVERY"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    REJECTED_BY_ADMIN = "REJECTED_BY_ADMIN"
    CANCELLED = "CANCELLED"


INITIAL_STATUS = OrderStatus.PENDING_ADMIN_DECISION

VALID_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING_ADMIN_DECISION: frozenset({
        OrderStatus.ADMIN_ACCEPTED,
        OrderStatus.REJECTED_BY_ADMIN,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.ADMIN_ACCEPTED: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.READY_FOR_DELIVERY, OrderStatus.CANCELLED}),
    OrderStatus.READY_FOR_DELIVERY: frozenset({OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELLED}),
    OrderStatus.OUT_FOR_DELIVERY: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.REJECTED_BY_ADMIN: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES: FrozenSet[OrderStatus] = frozenset(
    status for status, allowed in VALID_TRANSITIONS.items() if not allowed
)

# Deprecated spellings still sent by older mobile builds and migrations
LEGACY_ALIASES: Dict[str, OrderStatus] = {
    "PENDING": OrderStatus.PENDING_ADMIN_DECISION,
    "PROCESSING": OrderStatus.PREPARING,
}


def normalize_status(value) -> OrderStatus:
    """Map any accepted spelling of a status to its canonical member."""
    if isinstance(value, OrderStatus):
        return value
    if not isinstance(value, str) or not value.strip():
        raise UnknownStatus(value)
    key = value.strip().upper()
    if key in LEGACY_ALIASES:
        return LEGACY_ALIASES[key]
    try:
        return OrderStatus(key)
    except ValueError:
        raise UnknownStatus(value)


def is_terminal(status) -> bool:
    return normalize_status(status) in TERMINAL_STATUSES


def allowed_transitions(status) -> FrozenSet[OrderStatus]:
    return VALID_TRANSITIONS[normalize_status(status)]


def is_valid_transition(current, requested) -> bool:
    """True if ``requested`` is reachable in one step from ``current``."""
    return normalize_status(requested) in allowed_transitions(current)


def is_reachable(current, target) -> bool:
    """True if ``target`` lies one or more steps ahead of ``current``."""
    target = normalize_status(target)
    seen = set()
    frontier = [normalize_status(current)]
    while frontier:
        for nxt in VALID_TRANSITIONS[frontier.pop()]:
            if nxt == target:
                return True
            if nxt not in seen:
                seen.add(nxt)
                frontier.append(nxt)
    return False
