from typing import Any

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from services.order_service.enums import PaymentStatus
from services.order_service.models import Order, utcnow
from shared.observability import ordering_group_propagated_orders_total

logger = structlog.get_logger(__name__)


class OrderGroupSynchronizer:

    @staticmethod
    async def propagate(db: AsyncSession, group_id: str, status: PaymentStatus, details: dict[str, Any],
                        expected: PaymentStatus = PaymentStatus.PENDING) -> int:
        """
        Apply one settlement outcome to every sibling still in `expected`.
        Siblings that already settled are left alone. Runs inside the
        caller's transaction; returns the number of rows touched.
        """
        if not group_id:
            return 0

        result = await db.execute(
            update(Order)
            .where(Order.group_id == group_id)
            .where(Order.payment_status == expected.value)
            .values(payment_status=status.value, updated_at=utcnow(), **details)
            .execution_options(synchronize_session=False)
        )
        affected = result.rowcount or 0
        if affected:
            ordering_group_propagated_orders_total.labels(status=status.value).inc(affected)
        logger.info("group_propagated", group_id=group_id, status=status.value, affected=affected)
        return affected
