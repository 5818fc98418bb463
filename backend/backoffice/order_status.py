# Overview: Order status vocabulary and the allowed-edge table for the order state machine.

from __future__ import annotations

PENDING = "pending"
ALLOCATED = "allocated"
PARTIALLY_FULFILLED = "partially_fulfilled"
WAITING_INVOICE = "waiting_invoice"
WAITING_PAYMENT = "waiting_payment"
READY_TO_SHIP = "ready_to_ship"
DEBT_PENDING = "debt_pending"
PROCESSING = "processing"
SHIPPED = "shipped"
DELIVERED = "delivered"
COMPLETED = "completed"
CANCELED = "canceled"
EXPIRED = "expired"
HOLD = "hold"

ALL_STATUSES = frozenset({
    PENDING, ALLOCATED, PARTIALLY_FULFILLED, WAITING_INVOICE, WAITING_PAYMENT,
    READY_TO_SHIP, DEBT_PENDING, PROCESSING, SHIPPED, DELIVERED, COMPLETED,
    CANCELED, EXPIRED, HOLD,
})

TERMINAL_STATUSES = frozenset({COMPLETED, CANCELED, EXPIRED})

CANCELABLE_STATUSES = frozenset({
    PENDING, WAITING_INVOICE, READY_TO_SHIP, ALLOCATED, PARTIALLY_FULFILLED,
    DEBT_PENDING, PROCESSING, HOLD,
})

# Statuses the allocation engine may (re-)enter
ALLOCATABLE_STATUSES = frozenset({PENDING, PARTIALLY_FULFILLED, ALLOCATED})

# Statuses only the allocation engine / reaper may set
ENGINE_ONLY_STATUSES = frozenset({ALLOCATED, PARTIALLY_FULFILLED, EXPIRED})

# Orders still holding (or waiting for) stock; ban cascade and backorder reports use this
OPEN_STATUSES = frozenset(ALL_STATUSES - TERMINAL_STATUSES - {SHIPPED, DELIVERED})

# Edges reachable by transition_order (hold is added for every non-terminal source below)
VALID_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({ALLOCATED, PARTIALLY_FULFILLED, CANCELED, EXPIRED}),
    ALLOCATED: frozenset({WAITING_INVOICE, CANCELED}),
    PARTIALLY_FULFILLED: frozenset({ALLOCATED, WAITING_INVOICE, CANCELED}),
    WAITING_INVOICE: frozenset({WAITING_PAYMENT, READY_TO_SHIP, CANCELED}),
    WAITING_PAYMENT: frozenset({READY_TO_SHIP, DEBT_PENDING}),
    READY_TO_SHIP: frozenset({PROCESSING, SHIPPED, DEBT_PENDING, CANCELED}),
    PROCESSING: frozenset({SHIPPED, CANCELED}),
    DEBT_PENDING: frozenset({SHIPPED, COMPLETED, CANCELED}),
    SHIPPED: frozenset({DELIVERED}),
    DELIVERED: frozenset({COMPLETED, DEBT_PENDING}),
    HOLD: frozenset({CANCELED}),
    COMPLETED: frozenset(),
    CANCELED: frozenset(),
    EXPIRED: frozenset(),
}


def can_transition(current: str, target: str, held_from: str | None = None) -> bool:
    """
    Edge check only (no role, payment or courier gates).

    hold is reachable from any non-terminal status; leaving hold is allowed back to
    the status the order was held from, or to canceled.
    """
    if current in TERMINAL_STATUSES:
        return False
    if target == HOLD:
        return current != HOLD
    if current == HOLD:
        return target == CANCELED or (held_from is not None and target == held_from)
    return target in VALID_TRANSITIONS.get(current, frozenset())
