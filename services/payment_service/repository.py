from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.order_service.enums import PaymentStatus
from services.order_service.models import Order, utcnow


class PaymentRepository:
    # Every settlement write is guarded by the status it expects to leave

    @staticmethod
    async def settle(db: AsyncSession, order_id: int, expected: PaymentStatus, target: PaymentStatus,
                     values: dict[str, Any]) -> bool:
        result = await db.execute(
            update(Order)
            .where(Order.id == order_id)
            .where(Order.payment_status == expected.value)
            .values(payment_status=target.value, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def record_enrollment(db: AsyncSession, order_id: int, verify_enrollment_request_id: str,
                                metadata: dict[str, Any]) -> bool:
        """Store the correlation data the callback will need. Only while still Pending."""
        result = await db.execute(
            update(Order)
            .where(Order.id == order_id)
            .where(Order.payment_status == PaymentStatus.PENDING.value)
            .values(
                verify_enrollment_request_id=verify_enrollment_request_id,
                payment_response=metadata,
                payment_error=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def get_abandoned(db: AsyncSession, older_than: datetime, limit: int = 500) -> Sequence[Order]:
        result = await db.execute(
            select(Order)
            .where(Order.payment_status == PaymentStatus.PENDING.value)
            .where(Order.verify_enrollment_request_id.is_not(None))
            .where(Order.updated_at < older_than)
            .order_by(Order.id)
            .limit(limit)
        )
        return result.scalars().all()
