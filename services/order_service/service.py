import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from services.catalog_service.repository import CatalogRepository
from services.coupon_service import engine as coupon_engine
from services.coupon_service.service import CouponService
from services.notification_service.dispatcher import EventType, NotificationDispatcher
from shared.errors import NotFoundError, ValidationError
from shared.observability import ordering_orders_created_total

from .enums import OrderStatus, PaymentMethod, PaymentStatus
from .models import Order, OrderItem, OrderRestaurant
from .repository import OrderRepository
from .schemas import OrderCreate, OrderCreateResponse, PlacedOrder, RestaurantSummary

logger = structlog.get_logger(__name__)


@dataclass
class PricedLine:
    product_id: int
    product_name: str
    unit_price: Decimal
    quantity: int
    subtotal: Decimal
    restaurant_id: int
    restaurant_name: str
    variant_id: int | None = None
    variant_name: str | None = None


@dataclass
class RestaurantBucket:
    restaurant_id: int
    restaurant_name: str
    lines: list[PricedLine] = field(default_factory=list)
    subtotal: Decimal = Decimal("0.00")


def generate_order_number(now: datetime | None = None) -> str:
    """LG + yymmdd + 4 random digits. Human-readable, collisions are possible."""
    now = now or datetime.now(timezone.utc)
    return f"LG{now:%y%m%d}{random.randint(0, 9999):04d}"


def generate_group_id() -> str:
    return f"GRP_{uuid.uuid4().hex}"


class OrderService:

    @staticmethod
    async def _price_lines(db: AsyncSession, data: OrderCreate) -> list[PricedLine]:
        priced = []
        for line in data.items:
            product = await CatalogRepository.get_active_product(db, line.product_id)
            if not product:
                raise NotFoundError(f"Product not found: {line.product_id}", error_code="PRODUCT_NOT_FOUND")

            price, variant_name = product.price, None
            if line.variant_id is not None:
                variant = await CatalogRepository.get_active_variant(db, product.id, line.variant_id)
                if not variant:
                    raise NotFoundError(
                        f"Variant {line.variant_id} not found for product {product.id}",
                        error_code="VARIANT_NOT_FOUND",
                    )
                price, variant_name = variant.price, variant.name

            unit_price = coupon_engine.to_money(price)
            priced.append(PricedLine(
                product_id=product.id,
                product_name=product.name,
                unit_price=unit_price,
                quantity=line.quantity,
                subtotal=unit_price * line.quantity,
                restaurant_id=product.restaurant_id,
                restaurant_name=product.restaurant.name,
                variant_id=line.variant_id,
                variant_name=variant_name,
            ))
        return priced

    @staticmethod
    def _group_by_restaurant(lines: list[PricedLine]) -> list[RestaurantBucket]:
        buckets: dict[int, RestaurantBucket] = {}
        for line in lines:
            bucket = buckets.setdefault(
                line.restaurant_id, RestaurantBucket(line.restaurant_id, line.restaurant_name)
            )
            bucket.lines.append(line)
            bucket.subtotal += line.subtotal
        return list(buckets.values())

    @staticmethod
    async def _check_minimums(db: AsyncSession, buckets: list[RestaurantBucket]) -> None:
        restaurants = await CatalogRepository.get_restaurants(db, [b.restaurant_id for b in buckets])
        violations = []
        for bucket in buckets:
            restaurant = restaurants.get(bucket.restaurant_id)
            minimum = coupon_engine.to_money(restaurant.min_order or 0) if restaurant else Decimal("0.00")
            if minimum > 0 and bucket.subtotal < minimum:
                violations.append(f"{bucket.restaurant_name}: {minimum}")
        if violations:
            raise ValidationError(
                "Minimum order amount not reached: " + ", ".join(violations),
                error_code="MINIMUM_ORDER_NOT_MET",
            )

    @staticmethod
    async def create_order(db: AsyncSession, data: OrderCreate, customer_id: int,
                           now: datetime | None = None) -> OrderCreateResponse:
        """
        Build and persist one checkout atomically: one Order per restaurant,
        all sharing a group id. Prices, subtotals and the discount are
        recomputed here; nothing the client sent about money is used.
        """
        now = now or datetime.now(timezone.utc)
        try:
            lines = await OrderService._price_lines(db, data)
            buckets = OrderService._group_by_restaurant(lines)
            await OrderService._check_minimums(db, buckets)
            cart_subtotal = sum((b.subtotal for b in buckets), Decimal("0.00"))

            coupon, discount = None, Decimal("0.00")
            if data.coupon_code and data.coupon_code.strip():
                coupon, discount = await CouponService.redeem(db, data.coupon_code, cart_subtotal, now)
            shares = coupon_engine.allocate(discount, [b.subtotal for b in buckets])

            group_id = generate_group_id()
            orders: list[Order] = []
            for bucket, share in zip(buckets, shares):
                order = Order(
                    order_number=generate_order_number(now),
                    group_id=group_id,
                    customer_id=customer_id,
                    customer_name=data.customer_name,
                    customer_phone=data.customer_phone,
                    customer_address=data.customer_address,
                    notes=data.notes,
                    subtotal=bucket.subtotal,
                    discount_amount=share,
                    total_amount=bucket.subtotal - share,
                    coupon_id=coupon.id if coupon else None,
                    coupon_code=coupon.code if coupon else None,
                    status=OrderStatus.PENDING.value,
                    payment_status=PaymentStatus.PENDING.value,
                    payment_method=PaymentMethod.CREDIT_CARD.value,
                    created_at=now,
                )
                order.items = [
                    OrderItem(
                        product_id=line.product_id,
                        product_name=line.product_name,
                        product_price=line.unit_price,
                        quantity=line.quantity,
                        subtotal=line.subtotal,
                        variant_id=line.variant_id,
                        variant_name=line.variant_name,
                        restaurant_id=line.restaurant_id,
                    )
                    for line in bucket.lines
                ]
                order.restaurants = [
                    OrderRestaurant(
                        restaurant_id=bucket.restaurant_id,
                        restaurant_name=bucket.restaurant_name,
                        subtotal=bucket.subtotal,
                        item_count=len(bucket.lines),
                    )
                ]
                orders.append(await OrderRepository.add_order(db, order))

            if coupon:
                # One usage row for the whole cart, attached to the first order
                await CouponService.record_usage(db, coupon, customer_id, orders[0].id, discount)

            await NotificationDispatcher.enqueue(db, EventType.ORDER_PLACED, orders[0].id, group_id)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        ordering_orders_created_total.labels(restaurants="multi" if len(orders) > 1 else "single").inc()
        logger.info(
            "order_created",
            group_id=group_id,
            order_ids=[o.id for o in orders],
            subtotal=str(cart_subtotal),
            discount=str(discount),
        )

        return OrderCreateResponse(
            order_id=orders[0].id,
            order_number=orders[0].order_number,
            group_id=group_id,
            subtotal=cart_subtotal,
            discount_amount=discount,
            total_amount=cart_subtotal - discount,
            created_at=now,
            restaurants=[
                RestaurantSummary(
                    restaurant_id=b.restaurant_id,
                    restaurant_name=b.restaurant_name,
                    item_count=len(b.lines),
                    subtotal=b.subtotal,
                )
                for b in buckets
            ],
            orders=[
                PlacedOrder(
                    order_id=o.id,
                    order_number=o.order_number,
                    restaurant_id=b.restaurant_id,
                    restaurant_name=b.restaurant_name,
                    subtotal=o.subtotal,
                    discount_amount=o.discount_amount,
                    total_amount=o.total_amount,
                    item_count=len(b.lines),
                )
                for o, b in zip(orders, buckets)
            ],
        )

    @staticmethod
    async def get_order_by_number(db: AsyncSession, order_number: str) -> Order:
        order = await OrderRepository.get_by_number(db, order_number)
        if not order:
            raise NotFoundError("Order not found")
        return order
