from typing import Optional, Sequence

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Order


class OrderRepository:
    # Writes only flush: the calling service owns the transaction boundary

    @staticmethod
    async def add_order(db: AsyncSession, order: Order) -> Order:
        db.add(order)
        await db.flush()
        return order

    @staticmethod
    async def get_order(db: AsyncSession, order_id: int) -> Optional[Order]:
        result = await db.execute(select(Order).where(Order.id == order_id))
        return result.scalars().first()

    @staticmethod
    async def get_by_number(db: AsyncSession, order_number: str) -> Optional[Order]:
        # Order numbers can collide; the newest wins
        result = await db.execute(
            select(Order).where(Order.order_number == order_number).order_by(Order.id.desc())
        )
        return result.scalars().first()

    @staticmethod
    async def get_group(db: AsyncSession, group_id: str) -> Sequence[Order]:
        result = await db.execute(select(Order).where(Order.group_id == group_id).order_by(Order.id))
        return result.scalars().all()

    @staticmethod
    async def get_by_enrollment_id(db: AsyncSession, verify_enrollment_request_id: str) -> Optional[Order]:
        result = await db.execute(
            select(Order).where(Order.verify_enrollment_request_id == verify_enrollment_request_id)
        )
        return result.scalars().first()

    @staticmethod
    async def get_by_payment_reference(db: AsyncSession, reference: str) -> Optional[Order]:
        result = await db.execute(
            select(Order)
            .where(or_(
                Order.payment_transaction_id == reference,
                Order.verify_enrollment_request_id == reference,
            ))
            .order_by(Order.id)
        )
        return result.scalars().first()
