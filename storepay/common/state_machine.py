"""Status transitions enforced by the checkout and refund flows."""

# 3DS checkout flow, tracked per conversation id.
CHECKOUT_TRANSITIONS: dict[str, set[str]] = {
    "INITIATED": {"3DS_PENDING", "FAILED"},
    "3DS_PENDING": {"COMPLETED", "FAILED"},
    "COMPLETED": set(),
    "FAILED": set(),
}

# Payment audit records never re-enter PENDING. A declined callback can still be
# followed by a gateway-confirmed success for the same conversation.
PAYMENT_RECORD_TRANSITIONS: dict[str, set[str]] = {
    "PENDING": {"SUCCESS", "FAILED"},
    "SUCCESS": set(),
    "FAILED": {"SUCCESS"},
}

ORDER_TRANSITIONS: dict[str, set[str]] = {
    "AWAITING_PAYMENT": {"PAID", "CANCELLED"},
    "PAID": {"PROCESSING", "CANCELLED", "REFUND_REQUESTED"},
    "PROCESSING": {"SHIPPED", "CANCELLED", "REFUND_REQUESTED"},
    "SHIPPED": {"DELIVERED", "REFUND_REQUESTED"},
    "DELIVERED": {"COMPLETED", "REFUND_REQUESTED"},
    "COMPLETED": {"REFUND_REQUESTED"},
    # A refund claim resolves to REFUNDED or rolls back to the status it came from.
    "REFUND_REQUESTED": {"REFUNDED", "PAID", "PROCESSING", "SHIPPED", "DELIVERED", "COMPLETED"},
    "CANCELLED": set(),
    "REFUNDED": set(),
}

REFUNDABLE_ORDER_STATUSES = frozenset(
    status for status, targets in ORDER_TRANSITIONS.items() if "REFUND_REQUESTED" in targets
)


def _validate(table: dict[str, set[str]], current: str, new: str) -> None:
    if new not in table.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")


def validate_transition(current: str, new: str) -> None:
    """Raise when a checkout flow transition is not allowed."""

    _validate(CHECKOUT_TRANSITIONS, current, new)


def validate_payment_record_transition(current: str, new: str) -> None:
    """Raise when an audit record would leave a terminal status."""

    _validate(PAYMENT_RECORD_TRANSITIONS, current, new)


def validate_order_transition(current: str, new: str) -> None:
    """Raise when an order status change is not allowed."""

    _validate(ORDER_TRANSITIONS, current, new)


def can_transition_payment_record(current: str, new: str) -> bool:
    return new in PAYMENT_RECORD_TRANSITIONS.get(current, set())