from fastapi import FastAPI

from shared.config.database import init_models

# IMPORTANT: import models so they register with Base
from services.catalog_service import models as catalog_models  # noqa: F401
from services.coupon_service import models as coupon_models  # noqa: F401
from services.order_service import models as order_models  # noqa: F401
from services.notification_service import models as notification_models  # noqa: F401

from services.coupon_service.main import coupon_app
from services.order_service.main import order_app
from services.payment_service.main import payment_app
from services.notification_service.main import notification_app
from services.notification_service.broadcaster import Broadcaster, WebSocketBroadcaster
from services.notification_service.dispatcher import NotificationDispatcher
from services.notification_service.mailer import EmailSender, SmtpEmailSender
from services.payment_service.gateway import VakifGatewayClient

SUB_APPS = (order_app, coupon_app, payment_app, notification_app)


def build_app(gateway: VakifGatewayClient | None = None, broadcaster: Broadcaster | None = None,
              email_sender: EmailSender | None = None) -> FastAPI:
    """
    Wire the collaborators once and hand the same instances to every
    sub-app. Tests pass fakes here instead of patching modules.
    """
    gateway = gateway or VakifGatewayClient()
    broadcaster = broadcaster or WebSocketBroadcaster()
    dispatcher = NotificationDispatcher(broadcaster, email_sender or SmtpEmailSender())

    for sub_app in SUB_APPS:
        sub_app.state.gateway = gateway
        sub_app.state.broadcaster = broadcaster
        sub_app.state.dispatcher = dispatcher

    app = FastAPI(title="Ordering Cluster")
    app.state.dispatcher = dispatcher

    @app.on_event("startup")
    async def startup_event():
        # Create schemas and all tables
        await init_models()

    app.mount("/orders", order_app)
    app.mount("/coupons", coupon_app)
    app.mount("/payment", payment_app)
    app.mount("/notifications", notification_app)
    return app


app = build_app()
