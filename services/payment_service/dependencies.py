from fastapi import Request

from shared.config.payment import PAYMENT_CALLBACK_BASE_URL

from .service import PaymentService


def get_payment_service(request: Request) -> PaymentService:
    return PaymentService(request.app.state.gateway)


def resolve_client_ip(request: Request, explicit: str | None = None) -> str:
    """Explicit value, then the first X-Forwarded-For hop, then the socket peer."""
    if explicit and explicit.strip():
        return explicit.strip()
    forwarded = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
    if forwarded:
        return forwarded
    if request.client and request.client.host:
        return request.client.host
    return "0.0.0.0"


def callback_base_url(request: Request) -> str:
    # Behind a proxy the bank must be given the public URL, not ours
    if PAYMENT_CALLBACK_BASE_URL:
        return PAYMENT_CALLBACK_BASE_URL
    return f"{request.url.scheme}://{request.url.netloc}"
