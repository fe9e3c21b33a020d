from fastapi import FastAPI

from shared.errors import register_exception_handlers
from shared.observability import setup_observability

from .models import Coupon, CouponUsage  # noqa: F401 registers models with SQLAlchemy Base
from .router import router, public_router

coupon_app = FastAPI(title="Coupon Service", version="1.0.0")

# --- OBSERVABILITY BOOTSTRAP ---
setup_observability(coupon_app, "coupon_service")
register_exception_handlers(coupon_app)

coupon_app.include_router(public_router)
coupon_app.include_router(router)
