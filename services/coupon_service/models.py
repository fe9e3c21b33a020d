from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.sql import func
from shared.config.database import Base

class Coupon(Base):
    __tablename__ = "coupons"
    __table_args__ = {"schema": "coupon_schema"}

    PERCENTAGE = "percentage"
    FIXED = "fixed"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(64), unique=True, nullable=False, index=True) # stored upper-case
    description = Column(String(255), nullable=True)
    discount_type = Column(String(20), nullable=False) # percentage, fixed
    discount_value = Column(Numeric(10, 2), nullable=False)
    minimum_amount = Column(Numeric(10, 2), nullable=False, default=0)
    max_discount = Column(Numeric(10, 2), nullable=True) # cap, percentage only
    usage_limit = Column(Integer, nullable=True)
    used_count = Column(Integer, nullable=False, default=0)
    valid_from = Column(DateTime(timezone=True), nullable=True)
    valid_until = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class CouponUsage(Base):
    __tablename__ = "coupon_usage"
    __table_args__ = {"schema": "coupon_schema"}

    id = Column(Integer, primary_key=True, index=True)
    coupon_id = Column(Integer, ForeignKey("coupon_schema.coupons.id"), nullable=False, index=True)
    customer_id = Column(Integer, nullable=True)
    order_id = Column(Integer, nullable=False)
    discount_amount = Column(Numeric(10, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
