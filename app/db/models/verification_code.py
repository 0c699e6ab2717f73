"""
Verification Code Model - single-use secrets gating custody hand-over
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, ForeignKey, Index

from app.db.database import Base


class CodeType(str, enum.Enum):
    PICKUP = "pickup_code"
    DELIVERY = "delivery_code"


class CodeStatus(str, enum.Enum):
    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"
    SUPERSEDED = "superseded"  # replaced by a regenerated code


class RegenerationReason(str, enum.Enum):
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"
    EXPIRED = "expired"
    LOST = "lost"
    ADMIN = "admin"


class VerificationCode(Base):
    """Code bound to one booking and one purpose.

    Rows are never deleted: superseded and used codes stay as history.
    """

    __tablename__ = "verification_codes"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=True, index=True)

    code = Column(String(12), nullable=False)
    code_type = Column(SQLEnum(CodeType), nullable=False)
    status = Column(SQLEnum(CodeStatus), default=CodeStatus.ACTIVE, nullable=False)

    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, nullable=False)

    expires_at = Column(DateTime, nullable=False)
    used_at = Column(DateTime, nullable=True)
    superseded_at = Column(DateTime, nullable=True)
    regeneration_reason = Column(SQLEnum(RegenerationReason), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_verification_codes_booking_type_status", "booking_id", "code_type", "status"),
        Index("ix_verification_codes_code_type_status", "code", "code_type", "status"),
    )

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts)

    @property
    def is_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or datetime.utcnow())
