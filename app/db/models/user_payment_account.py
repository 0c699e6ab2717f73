"""
User Payment Account Model - connected payout account at the payment provider
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey
from sqlalchemy.orm import relationship

from app.db.database import Base


class UserPaymentAccount(Base):
    """Connected account used as transfer destination for travelers.

    Kept in sync by the provider's ``account.updated`` webhook.
    """

    __tablename__ = "user_payment_accounts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    provider_account_id = Column(String(100), unique=True, nullable=False, index=True)

    charges_enabled = Column(Boolean, default=False, nullable=False)
    payouts_enabled = Column(Boolean, default=False, nullable=False)
    details_submitted = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="payment_account")

    @property
    def can_accept_payments(self) -> bool:
        return bool(self.charges_enabled and self.payouts_enabled)
