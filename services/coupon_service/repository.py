from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Coupon, CouponUsage


class CouponRepository:

    @staticmethod
    async def get_by_code(db: AsyncSession, code: str) -> Optional[Coupon]:
        result = await db.execute(select(Coupon).where(Coupon.code == code))
        return result.scalars().first()

    @staticmethod
    async def list_redeemable(db: AsyncSession, now: datetime):
        result = await db.execute(
            select(Coupon)
            .where(Coupon.is_active.is_(True))
            .where(or_(Coupon.valid_from.is_(None), Coupon.valid_from <= now))
            .where(or_(Coupon.valid_until.is_(None), Coupon.valid_until >= now))
            .where(or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit))
            .order_by(Coupon.created_at.desc())
        )
        return result.scalars().all()

    @staticmethod
    async def increment_usage(db: AsyncSession, coupon_id: int) -> bool:
        """
        Claim one redemption. The limit check and the increment are a single
        statement, so two concurrent checkouts cannot both take the last slot.
        """
        result = await db.execute(
            update(Coupon)
            .where(Coupon.id == coupon_id)
            .where(Coupon.is_active.is_(True))
            .where(or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit))
            .values(used_count=Coupon.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def add_usage(db: AsyncSession, coupon_id: int, customer_id: int | None,
                        order_id: int, discount_amount: Decimal) -> CouponUsage:
        usage = CouponUsage(
            coupon_id=coupon_id,
            customer_id=customer_id,
            order_id=order_id,
            discount_amount=discount_amount,
        )
        db.add(usage)
        await db.flush()
        return usage
