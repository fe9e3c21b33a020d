from .jwt_handler import create_access_token, verify_access_token, customer_id_from_token
from .api_key import verify_api_key
from .dependencies import (
    get_optional_customer,
    verify_internal_api_key,
    websocket_has_internal_key,
)
from .rate_limiter import limiter, user_id_or_ip, ORDER_RATE_LIMIT, PAYMENT_RATE_LIMIT

__all__ = [
    "create_access_token",
    "verify_access_token",
    "customer_id_from_token",
    "verify_api_key",
    "get_optional_customer",
    "verify_internal_api_key",
    "websocket_has_internal_key",
    "limiter",
    "user_id_or_ip",
    "ORDER_RATE_LIMIT",
    "PAYMENT_RATE_LIMIT",
]
