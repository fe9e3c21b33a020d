from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from shared.errors import register_exception_handlers
from shared.observability import setup_observability
from shared.security import limiter

from .models import Order, OrderItem, OrderRestaurant  # noqa: F401 registers models with SQLAlchemy Base
from .router import router, public_router

order_app = FastAPI(title="Order Service", version="2.0.0")

# --- OBSERVABILITY BOOTSTRAP ---
setup_observability(order_app, "order_service")

# --- SECURITY SETUP ---
order_app.state.limiter = limiter
order_app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
register_exception_handlers(order_app)

order_app.include_router(public_router)
order_app.include_router(router)
