from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import Field

from shared.schemas import CamelModel


class CouponValidateRequest(CamelModel):
    code: str = Field(min_length=1, max_length=64)
    subtotal: Decimal = Field(gt=0)


class CouponQuote(CamelModel):
    coupon_id: int
    code: str
    description: Optional[str] = None
    discount_type: str
    discount_value: Decimal
    discount_amount: Decimal
    subtotal: Decimal
    final_amount: Decimal


class PromotionResponse(CamelModel):
    id: int
    code: str
    description: Optional[str] = None
    discount_type: str
    discount_value: Decimal
    minimum_amount: Decimal
    max_discount: Optional[Decimal] = None
    valid_until: Optional[datetime] = None
