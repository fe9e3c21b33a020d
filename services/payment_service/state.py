from services.order_service.enums import PaymentStatus
from shared.errors import ConflictError

# Paid and Failed are terminal
ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.AWAITING_PAYMENT}),
    PaymentStatus.AWAITING_PAYMENT: frozenset({
        PaymentStatus.AWAITING_PAYMENT, PaymentStatus.PAID, PaymentStatus.FAILED,
    }),
    PaymentStatus.PAID: frozenset(),
    PaymentStatus.FAILED: frozenset(),
}


def can_transition(current: PaymentStatus | str, target: PaymentStatus | str) -> bool:
    return PaymentStatus(target) in ALLOWED_TRANSITIONS[PaymentStatus(current)]


def ensure_transition(current: PaymentStatus | str, target: PaymentStatus | str) -> PaymentStatus:
    """Reject an illegal settlement move before anything is written."""
    current, target = PaymentStatus(current), PaymentStatus(target)
    if not can_transition(current, target):
        raise ConflictError(
            f"Payment cannot move from {current.value} to {target.value}",
            error_code="ILLEGAL_PAYMENT_TRANSITION",
        )
    return target
