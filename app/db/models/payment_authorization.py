"""
Payment Authorization Model - local mirror of a provider payment intent
placed with manual capture (a hold on the sender's card)
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Numeric, Text

from app.db.database import Base


class AuthorizationStatus(str, enum.Enum):
    PENDING = "pending"        # created, waiting for the sender's confirmation
    CONFIRMED = "confirmed"    # funds held, ready for capture
    CAPTURED = "captured"
    CANCELLED = "cancelled"
    FAILED = "failed"


class CaptureMode(str, enum.Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"
    CANCELLATION = "cancellation"  # partial capture of the retained amount


class PaymentAuthorization(Base):
    """One provider payment intent per accepted booking"""

    __tablename__ = "payment_authorizations"

    id = Column(Integer, primary_key=True, index=True)
    # Plain column: bookings.payment_authorization_id already points here
    booking_id = Column(Integer, nullable=False, index=True)
    provider_intent_id = Column(String(100), unique=True, nullable=False, index=True)
    destination_account_id = Column(String(100), nullable=False)

    amount = Column(Numeric(10, 2), nullable=False)
    platform_fee = Column(Numeric(10, 2), nullable=False)
    captured_amount = Column(Numeric(10, 2), nullable=True)
    currency = Column(String(3), nullable=False)

    status = Column(SQLEnum(AuthorizationStatus), default=AuthorizationStatus.PENDING, nullable=False)
    capture_mode = Column(SQLEnum(CaptureMode), nullable=True)
    capture_attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    cancellation_reason = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    confirmed_at = Column(DateTime, nullable=True)
    captured_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    # Card holds lapse at the provider after a few days
    expires_at = Column(DateTime, nullable=True)
