from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config.database import get_db

from .schemas import CouponQuote, CouponValidateRequest, PromotionResponse
from .service import CouponService

router = APIRouter(tags=["Coupons"])
public_router = APIRouter()  # For any public endpoints (e.g. health check)

@public_router.get("/health", include_in_schema=False)
async def health_check():
    return {"service": "coupon", "status": "running"}


@router.post("/validate", response_model=CouponQuote, summary="Preview a coupon against a subtotal")
async def validate_coupon(payload: CouponValidateRequest, db: AsyncSession = Depends(get_db)):
    # Preview only: nothing is redeemed until the order is placed
    return await CouponService.quote(db, payload)


@router.get("/promotions", response_model=list[PromotionResponse])
async def list_promotions(db: AsyncSession = Depends(get_db)):
    return await CouponService.list_promotions(db)
