"""
Cancellation Attempt Model - audit of every cancellation evaluation
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Float, Index

from app.db.database import Base


class CancellationAttempt(Base):
    """Recorded whether the cancellation was allowed or denied.

    Allowed post-acceptance rows feed the repeat-canceller limit.
    """

    __tablename__ = "cancellation_attempts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=True, index=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=True, index=True)

    attempt_type = Column(String(30), nullable=False)  # early_cancel / late_cancel / no_show / trip_cancel
    booking_status = Column(String(30), nullable=True)  # status at evaluation time
    is_allowed = Column(Boolean, nullable=False)
    denial_reason = Column(String(50), nullable=True)
    hours_before_departure = Column(Float, nullable=True)
    severity = Column(String(10), nullable=True)
    refund_percentage = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_cancellation_attempts_user_created", "user_id", "created_at"),
    )
