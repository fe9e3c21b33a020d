from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship
from shared.config.database import Base

from .enums import OrderStatus, PaymentMethod, PaymentStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Order(Base):
    """One row per restaurant per checkout; siblings share `group_id`."""

    __tablename__ = "orders"
    # We use a separate schema to simulate microservice isolation
    __table_args__ = {"schema": "order_schema"}

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(20), nullable=False, index=True) # LGyymmddNNNN, not unique
    group_id = Column(String(64), nullable=False, index=True)
    customer_id = Column(Integer, nullable=False, index=True)

    # Contact snapshot at checkout time
    customer_name = Column(String(200), nullable=False)
    customer_phone = Column(String(40), nullable=False)
    customer_address = Column(Text, nullable=False)
    notes = Column(Text, nullable=True)

    subtotal = Column(Numeric(10, 2), nullable=False)
    discount_amount = Column(Numeric(10, 2), nullable=False, default=0)
    total_amount = Column(Numeric(10, 2), nullable=False)
    coupon_id = Column(Integer, nullable=True)
    coupon_code = Column(String(64), nullable=True)

    status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True)
    payment_method = Column(String(30), nullable=False, default=PaymentMethod.CREDIT_CARD.value)
    payment_transaction_id = Column(String(100), nullable=True, index=True)
    payment_response = Column(JSON, nullable=True) # gateway metadata, enrollment data, callback token
    paid_at = Column(DateTime(timezone=True), nullable=True)
    payment_error = Column(String(1024), nullable=True)
    verify_enrollment_request_id = Column(String(100), nullable=True, unique=True, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    items = relationship("OrderItem", back_populates="order", lazy="selectin", order_by="OrderItem.id")
    restaurants = relationship("OrderRestaurant", back_populates="order", lazy="selectin")


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = {"schema": "order_schema"}

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("order_schema.orders.id"), nullable=False, index=True)
    product_id = Column(Integer, nullable=False)
    # Snapshotted at order time; later catalog changes never touch these
    product_name = Column(String(200), nullable=False)
    product_price = Column(Numeric(10, 2), nullable=False)
    quantity = Column(Integer, nullable=False)
    subtotal = Column(Numeric(10, 2), nullable=False)
    variant_id = Column(Integer, nullable=True)
    variant_name = Column(String(200), nullable=True)
    restaurant_id = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")

    @property
    def display_name(self) -> str:
        if self.variant_name:
            return f"{self.product_name} ({self.variant_name})"
        return self.product_name


class OrderRestaurant(Base):
    """Per-kitchen aggregate used for ticket printing and accounting."""

    __tablename__ = "order_restaurants"
    __table_args__ = {"schema": "order_schema"}

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("order_schema.orders.id"), nullable=False, index=True)
    restaurant_id = Column(Integer, nullable=False)
    restaurant_name = Column(String(200), nullable=False)
    subtotal = Column(Numeric(10, 2), nullable=False)
    item_count = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="restaurants")
