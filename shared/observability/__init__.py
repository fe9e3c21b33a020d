from .setup import setup_observability
from .metrics import (
    ordering_orders_created_total,
    ordering_coupon_redemptions_total,
    ordering_payment_settlements_total,
    ordering_callback_rejections_total,
    ordering_gateway_request_duration_seconds,
    ordering_group_propagated_orders_total,
    ordering_notifications_total,
)
