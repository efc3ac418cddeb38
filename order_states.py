"""
Order lifecycle state machine.

Statuses are closed enums and every legal move is listed in a transition table;
callers ask next_status() instead of comparing status strings.
"""
from enum import Enum
from typing import Dict, Optional, Tuple


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    FAILED = "failed"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"
    TERMINATED = "terminated"


class OrderEvent(str, Enum):
    PAYMENT_CONFIRMED = "payment_confirmed"
    PROVISIONING_REQUESTED = "provisioning_requested"
    PROVISIONING_SUCCEEDED = "provisioning_succeeded"
    PROVISIONING_FAILED = "provisioning_failed"
    RETRY_PROVISIONING = "retry_provisioning"
    SUSPEND = "suspend"
    UNSUSPEND = "unsuspend"
    RENEW = "renew"
    CANCEL = "cancel"
    TERMINATE = "terminate"
    DELETE = "delete"


class InvoiceStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    CANCELLED = "cancelled"
    OVERDUE = "overdue"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"


class InvalidTransition(ValueError):
    """Raised when an event is not legal for the current status."""

    def __init__(self, current, event):
        self.current = current
        self.event = event
        super().__init__(f"Cannot apply '{_value(event)}' in status '{_value(current)}'")


TERMINAL_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.TERMINATED})

_CLOSABLE = (OrderStatus.PENDING, OrderStatus.PAID, OrderStatus.ACTIVE, OrderStatus.SUSPENDED)

# (from, event) -> to. DELETE maps to None: the row is removed.
TRANSITIONS: Dict[Tuple[OrderStatus, OrderEvent], Optional[OrderStatus]] = {
    (OrderStatus.PENDING, OrderEvent.PAYMENT_CONFIRMED): OrderStatus.PAID,
    (OrderStatus.PAID, OrderEvent.PROVISIONING_REQUESTED): OrderStatus.PROVISIONING,
    (OrderStatus.PROVISIONING, OrderEvent.PROVISIONING_SUCCEEDED): OrderStatus.ACTIVE,
    (OrderStatus.PROVISIONING, OrderEvent.PROVISIONING_FAILED): OrderStatus.FAILED,
    (OrderStatus.FAILED, OrderEvent.RETRY_PROVISIONING): OrderStatus.PROVISIONING,
    (OrderStatus.ACTIVE, OrderEvent.SUSPEND): OrderStatus.SUSPENDED,
    (OrderStatus.SUSPENDED, OrderEvent.UNSUSPEND): OrderStatus.ACTIVE,
    (OrderStatus.ACTIVE, OrderEvent.RENEW): OrderStatus.ACTIVE,
    (OrderStatus.SUSPENDED, OrderEvent.RENEW): OrderStatus.ACTIVE,
}
TRANSITIONS.update({(status, OrderEvent.CANCEL): OrderStatus.CANCELLED for status in _CLOSABLE})
TRANSITIONS.update({(status, OrderEvent.TERMINATE): OrderStatus.TERMINATED for status in _CLOSABLE})
TRANSITIONS.update({
    (status, OrderEvent.DELETE): None for status in OrderStatus if status not in TERMINAL_STATUSES
})

INVOICE_TRANSITIONS = {
    InvoiceStatus.UNPAID: {InvoiceStatus.PAID, InvoiceStatus.OVERDUE, InvoiceStatus.CANCELLED},
    InvoiceStatus.OVERDUE: {InvoiceStatus.PAID, InvoiceStatus.CANCELLED},
    InvoiceStatus.PAID: set(),
    InvoiceStatus.CANCELLED: set(),
}


def _value(item) -> str:
    return item.value if isinstance(item, Enum) else str(item)


def next_status(current, event) -> Optional[OrderStatus]:
    """Return the status an order moves to, or raise InvalidTransition."""
    try:
        key = (OrderStatus(current), OrderEvent(event))
    except ValueError:
        raise InvalidTransition(current, event)
    if key not in TRANSITIONS:
        raise InvalidTransition(current, event)
    return TRANSITIONS[key]


def can_transition(current, event) -> bool:
    try:
        next_status(current, event)
    except InvalidTransition:
        return False
    return True


def next_invoice_status(current, target) -> InvoiceStatus:
    current, target = InvoiceStatus(current), InvoiceStatus(target)
    if target not in INVOICE_TRANSITIONS[current]:
        raise InvalidTransition(current, target)
    return target
