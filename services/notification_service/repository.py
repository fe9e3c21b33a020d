from datetime import datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.order_service.models import utcnow

from .models import OutboxEvent

# A row stuck in 'sending' this long belongs to a crashed worker
STALE_CLAIM = timedelta(minutes=5)


class OutboxRepository:

    @staticmethod
    async def add(db: AsyncSession, event: OutboxEvent) -> OutboxEvent:
        db.add(event)
        await db.flush()
        return event

    @staticmethod
    async def get(db: AsyncSession, event_id: int) -> Optional[OutboxEvent]:
        result = await db.execute(select(OutboxEvent).where(OutboxEvent.id == event_id))
        return result.scalars().first()

    @staticmethod
    async def due_ids(db: AsyncSession, limit: int, now: datetime | None = None) -> Sequence[int]:
        now = now or utcnow()
        result = await db.execute(
            select(OutboxEvent.id)
            .where(or_(
                OutboxEvent.status == OutboxEvent.PENDING,
                and_(OutboxEvent.status == OutboxEvent.SENDING, OutboxEvent.claimed_at < now - STALE_CLAIM),
            ))
            .order_by(OutboxEvent.id)
            .limit(limit)
        )
        return result.scalars().all()

    @staticmethod
    async def claim(db: AsyncSession, event_id: int, now: datetime | None = None) -> bool:
        """Move one row to 'sending'. Only one concurrent drainer can win."""
        now = now or utcnow()
        result = await db.execute(
            update(OutboxEvent)
            .where(OutboxEvent.id == event_id)
            .where(or_(
                OutboxEvent.status == OutboxEvent.PENDING,
                and_(OutboxEvent.status == OutboxEvent.SENDING, OutboxEvent.claimed_at < now - STALE_CLAIM),
            ))
            .values(status=OutboxEvent.SENDING, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def mark_sent(db: AsyncSession, event: OutboxEvent) -> None:
        event.status = OutboxEvent.SENT
        event.sent_at = utcnow()
        event.last_error = None
        await db.flush()

    @staticmethod
    async def mark_failed(db: AsyncSession, event: OutboxEvent, error: str, max_attempts: int) -> None:
        event.attempts = (event.attempts or 0) + 1
        event.last_error = error[:1024]
        event.status = OutboxEvent.FAILED if event.attempts >= max_attempts else OutboxEvent.PENDING
        await db.flush()
