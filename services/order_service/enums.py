import enum


class OrderStatus(str, enum.Enum):
    """Fulfillment lifecycle, driven by the restaurant admin screens."""
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    PREPARING = "Preparing"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


class PaymentStatus(str, enum.Enum):
    """Settlement lifecycle, driven only by the payment service."""
    PENDING = "Pending"
    AWAITING_PAYMENT = "AwaitingPayment"
    PAID = "Paid"
    FAILED = "Failed"


class PaymentMethod(str, enum.Enum):
    CREDIT_CARD = "credit_card"
    CASH_ON_DELIVERY = "cash_on_delivery"
    CARD_ON_DELIVERY = "card_on_delivery"
    PICKUP = "pickup"


OFFLINE_METHODS = frozenset({
    PaymentMethod.CASH_ON_DELIVERY,
    PaymentMethod.CARD_ON_DELIVERY,
    PaymentMethod.PICKUP,
})
