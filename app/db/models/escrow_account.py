"""
Escrow Account Model - captured money withheld from the traveler until delivery
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Numeric, ForeignKey, Text

from app.db.database import Base


class EscrowStatus(str, enum.Enum):
    HOLDING = "holding"
    FULLY_RELEASED = "fully_released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


class ReleaseReason(str, enum.Enum):
    DELIVERY_COMPLETED = "delivery_completed"
    NO_SHOW = "no_show"
    ADMIN_ACTION = "admin_action"


class EscrowAccount(Base):
    """One escrow per booking; never deleted.

    Status only moves holding -> fully_released | refunded | disputed.
    """

    __tablename__ = "escrow_accounts"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), unique=True, nullable=False)
    # The capture transaction that funded this escrow
    transaction_id = Column(Integer, ForeignKey("transactions.id"), unique=True, nullable=False)

    amount_held = Column(Numeric(10, 2), nullable=False)
    amount_released = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False)

    status = Column(SQLEnum(EscrowStatus), default=EscrowStatus.HOLDING, nullable=False, index=True)
    held_reason = Column(String(100), nullable=True)
    release_reason = Column(SQLEnum(ReleaseReason), nullable=True)
    release_notes = Column(Text, nullable=True)

    held_at = Column(DateTime, default=datetime.utcnow)
    released_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    disputed_at = Column(DateTime, nullable=True)
