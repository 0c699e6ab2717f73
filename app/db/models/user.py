"""
User Model - Senders, Travelers and Admins

A user acts as sender on the bookings they create and as receiver
(traveler) on bookings made against their own trips.
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Boolean
from sqlalchemy.orm import relationship

from app.db.database import Base


class UserRole(str, enum.Enum):
    USER = "user"
    ADMIN = "admin"


class User(Base):
    """Marketplace account"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(150), nullable=True)
    role = Column(SQLEnum(UserRole), default=UserRole.USER, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    # Set by admin tooling after repeated cancellations
    suspended_until = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    payment_account = relationship(
        "UserPaymentAccount", back_populates="user", uselist=False, lazy="selectin"
    )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def is_suspended(self, now: datetime | None = None) -> bool:
        now = now or datetime.utcnow()
        return self.suspended_until is not None and self.suspended_until > now
