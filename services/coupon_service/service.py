from datetime import datetime, timezone
from decimal import Decimal

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import CouponError
from shared.observability import ordering_coupon_redemptions_total

from . import engine
from .models import Coupon
from .repository import CouponRepository
from .schemas import CouponQuote, CouponValidateRequest

logger = structlog.get_logger(__name__)


class CouponService:

    @staticmethod
    def normalize_code(code: str) -> str:
        return code.strip().upper()

    @staticmethod
    async def validate(db: AsyncSession, code: str, subtotal, now: datetime | None = None) -> tuple[Coupon, Decimal]:
        """Returns the coupon and the discount it grants on `subtotal`, or raises CouponError."""
        now = now or datetime.now(timezone.utc)
        coupon = await CouponRepository.get_by_code(db, CouponService.normalize_code(code))
        return coupon, engine.evaluate(coupon, subtotal, now)

    @staticmethod
    async def redeem(db: AsyncSession, code: str, subtotal, now: datetime | None = None) -> tuple[Coupon, Decimal]:
        """
        Validate and claim one use of the coupon. Must run inside the caller's
        order transaction: the claim is rolled back with the order.
        """
        try:
            coupon, discount = await CouponService.validate(db, code, subtotal, now)
            if not await CouponRepository.increment_usage(db, coupon.id):
                # Lost the race for the last redemption
                raise CouponError(CouponError.USAGE_LIMIT_REACHED, "This coupon has reached its usage limit")
        except CouponError as exc:
            ordering_coupon_redemptions_total.labels(result=exc.reason).inc()
            logger.info("coupon_rejected", code=code, reason=exc.reason)
            raise

        ordering_coupon_redemptions_total.labels(result="applied").inc()
        logger.info("coupon_redeemed", coupon_id=coupon.id, discount=str(discount))
        return coupon, discount

    @staticmethod
    async def record_usage(db: AsyncSession, coupon: Coupon, customer_id: int | None,
                           order_id: int, discount: Decimal):
        return await CouponRepository.add_usage(db, coupon.id, customer_id, order_id, discount)

    @staticmethod
    async def quote(db: AsyncSession, data: CouponValidateRequest) -> CouponQuote:
        subtotal = engine.to_money(data.subtotal)
        coupon, discount = await CouponService.validate(db, data.code, subtotal)
        return CouponQuote(
            coupon_id=coupon.id,
            code=coupon.code,
            description=coupon.description,
            discount_type=coupon.discount_type,
            discount_value=coupon.discount_value,
            discount_amount=discount,
            subtotal=subtotal,
            final_amount=subtotal - discount,
        )

    @staticmethod
    async def list_promotions(db: AsyncSession):
        return await CouponRepository.list_redeemable(db, datetime.now(timezone.utc))
