from fastapi import FastAPI

from shared.errors import register_exception_handlers
from shared.observability import setup_observability

from .models import OutboxEvent  # noqa: F401 - registers models with SQLAlchemy Base
from .router import router, public_router

notification_app = FastAPI(title="Notification Service", version="2.0.0")

# --- OBSERVABILITY BOOTSTRAP ---
setup_observability(notification_app, "notification_service")
register_exception_handlers(notification_app)

notification_app.include_router(public_router)
notification_app.include_router(router)
