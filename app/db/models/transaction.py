"""
Transaction Model - append-only audit trail of money movements per booking
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Numeric, ForeignKey, UniqueConstraint

from app.db.database import Base


class TransactionType(str, enum.Enum):
    AUTHORIZATION = "authorization"
    CAPTURE = "capture"
    HOLD = "hold"
    RELEASE = "release"
    REFUND = "refund"
    TRANSFER = "transfer"
    CANCELLATION_RETENTION = "cancellation_retention"
    COMPENSATION = "compensation"


class TransactionStatus(str, enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class Transaction(Base):
    """Immutable money movement row"""

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    # No FK: escrow_accounts.transaction_id already references this table
    escrow_account_id = Column(Integer, nullable=True, index=True)
    payment_authorization_id = Column(Integer, ForeignKey("payment_authorizations.id"), nullable=True)

    type = Column(SQLEnum(TransactionType), nullable=False)
    status = Column(SQLEnum(TransactionStatus), default=TransactionStatus.COMPLETED, nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    commission_amount = Column(Numeric(10, 2), nullable=True)
    receiver_amount = Column(Numeric(10, 2), nullable=True)
    currency = Column(String(3), nullable=False)
    provider_reference = Column(String(100), nullable=True)
    description = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    # One hold/release/refund row per escrow; NULL escrow ids never collide
    __table_args__ = (
        UniqueConstraint("escrow_account_id", "type", name="uq_transaction_escrow_type"),
    )
