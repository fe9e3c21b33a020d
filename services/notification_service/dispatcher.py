import os
from typing import Any, Sequence

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.catalog_service.repository import CatalogRepository
from services.order_service.models import Order
from services.order_service.repository import OrderRepository
from shared.config.database import AsyncSessionLocal
from shared.observability import ordering_notifications_total

from .broadcaster import Broadcaster
from .mailer import EmailSender, render_order_email
from .models import OutboxEvent
from .repository import OutboxRepository

logger = structlog.get_logger(__name__)

NOTIFICATION_MAX_ATTEMPTS = int(os.getenv("NOTIFICATION_MAX_ATTEMPTS", "5"))


class EventType:
    # Heads-up to the restaurant screens; nothing is printed yet
    ORDER_PLACED = "order.placed"
    # Payment settled (online or offline): e-mail plus kitchen ticket
    ORDER_CONFIRMED = "order.confirmed"


class DeliveryError(Exception):
    pass


def print_ticket(order: Order, restaurant_id: int, restaurant_name: str) -> dict[str, Any]:
    items = [i for i in order.items if i.restaurant_id == restaurant_id]
    return {
        "event": "order:new",
        "orderId": order.id,
        "orderNumber": order.order_number,
        "groupId": order.group_id,
        "restaurantId": restaurant_id,
        "restaurantName": restaurant_name,
        "customerName": order.customer_name,
        "customerPhone": order.customer_phone,
        "customerAddress": order.customer_address,
        "notes": order.notes,
        "subtotal": str(order.subtotal),
        "discountAmount": str(order.discount_amount or 0),
        "totalAmount": str(order.total_amount),
        "couponCode": order.coupon_code,
        "paymentMethod": order.payment_method,
        "paymentStatus": order.payment_status,
        "items": [
            {
                "productName": i.product_name,
                "variantName": i.variant_name,
                "quantity": i.quantity,
                "price": str(i.product_price),
                "subtotal": str(i.subtotal),
            }
            for i in items
        ],
        "createdAt": order.created_at.isoformat() if order.created_at else None,
    }


class NotificationDispatcher:
    """
    Delivers outbox events to the order e-mail inbox and the restaurant
    print agents. Delivery happens outside the request transaction: a
    failure here is recorded on the outbox row and retried, it never
    undoes an order or a payment.
    """

    def __init__(self, broadcaster: Broadcaster, email_sender: EmailSender,
                 session_factory: async_sessionmaker = AsyncSessionLocal,
                 max_attempts: int = NOTIFICATION_MAX_ATTEMPTS):
        self.broadcaster = broadcaster
        self.email_sender = email_sender
        self.session_factory = session_factory
        self.max_attempts = max_attempts

    @staticmethod
    async def enqueue(db: AsyncSession, event_type: str, order_id: int, group_id: str) -> OutboxEvent:
        """Add an event to the caller's transaction. Commits with it or not at all."""
        return await OutboxRepository.add(
            db, OutboxEvent(event_type=event_type, order_id=order_id, group_id=group_id,
                            status=OutboxEvent.PENDING, attempts=0, delivered_channels=[])
        )

    async def drain(self, limit: int = 50) -> int:
        """Deliver due events. Returns the number delivered; never raises."""
        delivered = 0
        try:
            async with self.session_factory() as db:
                event_ids = await OutboxRepository.due_ids(db, limit)
                for event_id in event_ids:
                    claimed = await OutboxRepository.claim(db, event_id)
                    await db.commit()
                    if not claimed:
                        continue
                    if await self._process(db, event_id):
                        delivered += 1
        except Exception:
            logger.exception("notification_drain_failed")
        return delivered

    async def _process(self, db: AsyncSession, event_id: int) -> bool:
        event = await OutboxRepository.get(db, event_id)
        log = logger.bind(event_id=event_id, event_type=event.event_type, group_id=event.group_id)
        try:
            await self._deliver(db, event)
        except Exception as exc:
            await OutboxRepository.mark_failed(db, event, str(exc) or exc.__class__.__name__, self.max_attempts)
            await db.commit()
            log.warning("notification_failed", error=str(exc), attempts=event.attempts, status=event.status)
            return False

        await OutboxRepository.mark_sent(db, event)
        await db.commit()
        log.info("notification_sent")
        return True

    async def _deliver(self, db: AsyncSession, event: OutboxEvent) -> None:
        orders = await OrderRepository.get_group(db, event.group_id)
        if not orders:
            raise DeliveryError(f"no orders for group {event.group_id}")

        done = set(event.delivered_channels or [])

        if event.event_type == EventType.ORDER_CONFIRMED and "email" not in done:
            await self._send_email(orders)
            done.add("email")
            event.delivered_channels = sorted(done)
            await db.flush()

        await self._notify_restaurants(db, event, orders, done)

    async def _send_email(self, orders: Sequence[Order]) -> None:
        subject, html, text = render_order_email(orders)
        try:
            sent = await self.email_sender.send(subject, html, text)
        except Exception:
            ordering_notifications_total.labels(channel="email", result="error").inc()
            raise
        ordering_notifications_total.labels(channel="email", result="sent" if sent else "skipped").inc()

    async def _notify_restaurants(self, db: AsyncSession, event: OutboxEvent,
                                  orders: Sequence[Order], done: set[str]) -> None:
        confirmed = event.event_type == EventType.ORDER_CONFIRMED
        restaurant_ids = sorted({r.restaurant_id for o in orders for r in o.restaurants})
        restaurants = await CatalogRepository.get_restaurants(db, restaurant_ids)
        missing = []

        for order in orders:
            for summary in order.restaurants:
                channel = f"restaurant:{summary.restaurant_id}"
                if channel in done:
                    continue

                restaurant = restaurants.get(summary.restaurant_id)
                if confirmed and restaurant is not None and not restaurant.auto_print:
                    ordering_notifications_total.labels(channel="printer", result="skipped").inc()
                    logger.info("auto_print_disabled", restaurant_id=summary.restaurant_id, order_id=order.id)
                    done.add(channel)
                    continue

                if confirmed:
                    payload = print_ticket(order, summary.restaurant_id, summary.restaurant_name)
                else:
                    payload = {
                        "event": "order:placed",
                        "orderId": order.id,
                        "orderNumber": order.order_number,
                        "restaurantId": summary.restaurant_id,
                        "totalAmount": str(order.total_amount),
                    }

                received = await self.broadcaster.notify_restaurant(summary.restaurant_id, payload)
                if received == 0 and confirmed:
                    # No agent online: keep the ticket for the next drain
                    ordering_notifications_total.labels(channel="printer", result="no_agent").inc()
                    missing.append(summary.restaurant_id)
                    continue

                ordering_notifications_total.labels(
                    channel="printer" if confirmed else "screen", result="sent" if received else "no_agent"
                ).inc()
                done.add(channel)

        event.delivered_channels = sorted(done)
        await db.flush()
        if missing:
            raise DeliveryError(f"no print agent connected for restaurants {missing}")
