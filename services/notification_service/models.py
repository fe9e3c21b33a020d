from sqlalchemy import JSON, Column, DateTime, Integer, String
from shared.config.database import Base

from services.order_service.models import utcnow


class OutboxEvent(Base):
    """
    Durable notification request written in the same transaction as the
    order change that caused it. Drained after the response is sent.
    """

    __tablename__ = "notification_outbox"
    __table_args__ = {"schema": "notification_schema"}

    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"

    id = Column(Integer, primary_key=True, index=True)
    event_type = Column(String(40), nullable=False)
    order_id = Column(Integer, nullable=False, index=True)
    group_id = Column(String(64), nullable=False)
    status = Column(String(20), nullable=False, default=PENDING, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    delivered_channels = Column(JSON, nullable=False, default=list) # channels already done, skipped on retry
    last_error = Column(String(1024), nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
