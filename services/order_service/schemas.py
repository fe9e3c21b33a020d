from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import Field

from shared.schemas import CamelModel


class OrderLine(CamelModel):
    product_id: int
    quantity: int = Field(ge=1, le=100)
    variant_id: Optional[int] = None
    # Any client-side price is ignored; the catalog is authoritative


class OrderCreate(CamelModel):
    customer_id: Optional[int] = None
    customer_name: str = Field(min_length=1, max_length=200)
    customer_phone: str = Field(min_length=1, max_length=40)
    customer_address: str = Field(min_length=1)
    notes: Optional[str] = None
    items: List[OrderLine] = Field(min_length=1)
    coupon_code: Optional[str] = None


class RestaurantSummary(CamelModel):
    restaurant_id: int
    restaurant_name: str
    item_count: int
    subtotal: Decimal


class PlacedOrder(CamelModel):
    order_id: int
    order_number: str
    restaurant_id: int
    restaurant_name: str
    subtotal: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    item_count: int


class OrderCreateResponse(CamelModel):
    order_id: int
    order_number: str
    group_id: str
    subtotal: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    created_at: datetime
    restaurants: List[RestaurantSummary]
    orders: List[PlacedOrder]


class OrderItemResponse(CamelModel):
    product_id: int
    product_name: str
    product_price: Decimal
    quantity: int
    subtotal: Decimal
    variant_id: Optional[int] = None
    variant_name: Optional[str] = None
    restaurant_id: int


class OrderDetailResponse(CamelModel):
    id: int
    order_number: str
    group_id: str
    customer_name: str
    customer_phone: str
    customer_address: str
    notes: Optional[str] = None
    subtotal: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    coupon_code: Optional[str] = None
    status: str
    payment_status: str
    payment_method: str
    paid_at: Optional[datetime] = None
    created_at: datetime
    items: List[OrderItemResponse] = []
