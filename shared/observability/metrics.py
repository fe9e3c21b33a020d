from prometheus_client import Counter, Histogram

# Business Metrics
ordering_orders_created_total = Counter(
    "ordering_orders_created_total",
    "Checkouts persisted by the order builder",
    ["restaurants"] # Labels: 'single', 'multi'
)

ordering_coupon_redemptions_total = Counter(
    "ordering_coupon_redemptions_total",
    "Coupon applications at checkout",
    ["result"] # Labels: 'applied' or a CouponError reason
)

ordering_payment_settlements_total = Counter(
    "ordering_payment_settlements_total",
    "Payment status transitions applied to a primary order",
    ["status", "flow"] # flow: 'non_secure', 'three_d_secure', 'offline', 'expiry'
)

ordering_callback_rejections_total = Counter(
    "ordering_callback_rejections_total",
    "3D Secure callbacks rejected before provisioning",
    ["reason"] # 'missing_params', 'not_pending', 'token_mismatch', 'amount_mismatch'
)

ordering_gateway_request_duration_seconds = Histogram(
    "ordering_gateway_request_duration_seconds",
    "Round-trip latency of bank gateway calls",
    ["operation"] # 'enrollment', 'non_secure', 'three_d_secure'
)

ordering_group_propagated_orders_total = Counter(
    "ordering_group_propagated_orders_total",
    "Sibling orders updated by group propagation",
    ["status"]
)

ordering_notifications_total = Counter(
    "ordering_notifications_total",
    "Outbox notification deliveries",
    ["channel", "result"] # channel: 'email', 'printer'; result: 'sent', 'failed', 'skipped'
)
