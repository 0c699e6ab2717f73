"""
Webhook Event Model - idempotency table for payment provider webhooks.

Only events with status=completed are skipped on redelivery; an event left
in "processing" (crash mid-way) is processed again.
"""
from datetime import datetime

from sqlalchemy import Column, String, DateTime, Index

from app.db.database import Base


class WebhookEvent(Base):
    """Provider event already seen"""

    __tablename__ = "webhook_events"

    event_id = Column(String(200), primary_key=True)
    provider = Column(String(20), nullable=False)
    event_type = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False, default="processing")
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_webhook_events_status_created", "status", "created_at"),
    )
