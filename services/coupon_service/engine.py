"""
Pure coupon arithmetic. No I/O: callers load the coupon and pass `now`.
"""
from datetime import datetime, timezone
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP

from shared.errors import CouponError

from .models import Coupon

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _as_utc(moment: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def compute_discount(discount_type: str, value, subtotal, max_discount=None) -> Decimal:
    """Discount for `subtotal`, clamped to [0, subtotal]."""
    subtotal = to_money(subtotal)
    value = Decimal(str(value))

    if discount_type == Coupon.PERCENTAGE:
        discount = subtotal * value / Decimal(100)
        if max_discount is not None and discount > Decimal(str(max_discount)):
            discount = Decimal(str(max_discount))
    else:
        discount = value

    discount = to_money(discount)
    return min(max(discount, Decimal("0.00")), subtotal)


def check_redeemable(coupon: Coupon | None, subtotal, now: datetime) -> None:
    """Raises CouponError with the first failing rule, in storefront order."""
    if coupon is None or not coupon.is_active:
        raise CouponError(CouponError.NOT_FOUND, "Invalid coupon code")

    now = _as_utc(now)
    valid_from = _as_utc(coupon.valid_from)
    valid_until = _as_utc(coupon.valid_until)

    if valid_from is not None and valid_from > now:
        raise CouponError(CouponError.NOT_YET_VALID, "This coupon is not active yet")
    if valid_until is not None and valid_until < now:
        raise CouponError(CouponError.EXPIRED, "This coupon has expired")
    if coupon.usage_limit is not None and (coupon.used_count or 0) >= coupon.usage_limit:
        raise CouponError(CouponError.USAGE_LIMIT_REACHED, "This coupon has reached its usage limit")

    minimum = to_money(coupon.minimum_amount or 0)
    if to_money(subtotal) < minimum:
        raise CouponError(
            CouponError.MINIMUM_NOT_MET,
            f"Minimum order amount for this coupon is {minimum}",
        )


def evaluate(coupon: Coupon | None, subtotal, now: datetime) -> Decimal:
    check_redeemable(coupon, subtotal, now)
    return compute_discount(coupon.discount_type, coupon.discount_value, subtotal, coupon.max_discount)


def allocate(total_discount: Decimal, subtotals: list[Decimal]) -> list[Decimal]:
    """
    Split a cart-level discount across restaurants proportionally to their
    subtotals. Every share is floored to cents, then the leftover cents go
    one at a time to the largest remainders. Shares sum to `total_discount`
    and none exceeds its own subtotal.
    """
    total_discount = to_money(total_discount)
    cart_subtotal = sum(subtotals, Decimal("0.00"))
    if not subtotals:
        return []
    if cart_subtotal == 0 or total_discount == 0:
        return [Decimal("0.00") for _ in subtotals]

    exact = [total_discount * s / cart_subtotal for s in subtotals]
    shares = [e.quantize(CENT, rounding=ROUND_DOWN) for e in exact]
    leftover = int((total_discount - sum(shares, Decimal("0.00"))) / CENT)

    by_remainder = sorted(range(len(shares)), key=lambda i: exact[i] - shares[i], reverse=True)
    for i in by_remainder:
        if leftover <= 0:
            break
        if shares[i] + CENT <= subtotals[i]:
            shares[i] += CENT
            leftover -= 1
    return shares
